import asyncio
import json
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import RedisError

from app.chat.api.route import chat_router
from app.chat.client.frame_parser import FrameParser
from app.chat.entity.chat import ChatSession, Source, TokenUsage, utcnow
from app.chat.entity.frame import Frame
from app.chat.service.service import IChatRepository
from app.chat.service.session_service import SessionService
from app.core.exceptions import NotFound, register_exception_handlers
from app.llm.service.llm_service import LLMService
from app.llm.service.provider.base_provider import BaseProvider, ProviderStream
from pkg.auth_token_client.client import TokenClient

TEST_SECRET = "test-secret"
USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class InMemoryChatRepository(IChatRepository):
    """Document store double; hands out copies so callers cannot mutate stored state."""

    def __init__(self):
        self.sessions: Dict[str, ChatSession] = {}
        self.fail_saves = False
        self.save_calls = 0
        self._clock = utcnow()

    def _tick(self):
        self._clock += timedelta(milliseconds=1)
        return self._clock

    async def create_session(self, user_id: str, title: str) -> ChatSession:
        now = self._tick()
        session = ChatSession(id=str(uuid.uuid4()), user_id=user_id, title=title, created_at=now, updated_at=now)
        self.sessions[session.id] = session
        return session.model_copy(deep=True)

    async def find_session(self, session_id: str, user_id: str) -> Optional[ChatSession]:
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return None
        return session.model_copy(deep=True)

    async def save_session(self, session: ChatSession) -> ChatSession:
        self.save_calls += 1
        if self.fail_saves:
            raise RuntimeError("store unavailable")
        stored = self.sessions.get(session.id)
        if stored is None or stored.user_id != session.user_id:
            raise NotFound(f"Chat session {session.id} not found")
        stored = session.model_copy(deep=True)
        stored.updated_at = self._tick()
        self.sessions[session.id] = stored
        return stored.model_copy(deep=True)

    async def update_title(self, session_id: str, user_id: str, title: str) -> Optional[ChatSession]:
        stored = self.sessions.get(session_id)
        if stored is None or stored.user_id != user_id:
            return None
        stored.title = title
        stored.updated_at = self._tick()
        return stored.model_copy(deep=True)

    async def delete_session(self, session_id: str, user_id: str) -> bool:
        stored = self.sessions.get(session_id)
        if stored is None or stored.user_id != user_id:
            return False
        del self.sessions[session_id]
        return True

    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        owned = [s for s in self.sessions.values() if s.user_id == user_id]
        owned.sort(key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy(deep=True) for s in owned]


class FakeCache:
    """Stands in for RedisClient; values go through JSON like the real one."""

    def __init__(self, broken: bool = False):
        self.values: Dict[str, str] = {}
        self.broken = broken
        self.deletes: List[str] = []

    async def get_json(self, key):
        if self.broken:
            raise RedisError("connection refused")
        return json.loads(self.values[key]) if key in self.values else None

    async def set_json(self, key, value, ttl=None):
        if self.broken:
            raise RedisError("connection refused")
        self.values[key] = json.dumps(value)
        return True

    async def delete(self, *keys):
        if self.broken:
            raise RedisError("connection refused")
        self.deletes.extend(keys)
        return sum(1 for k in keys if self.values.pop(k, None) is not None)


class ScriptedStream(ProviderStream):
    def __init__(
        self,
        chunks: List[str],
        usage: Optional[TokenUsage] = None,
        sources: Optional[List[Source]] = None,
        fail_at: Optional[int] = None,
        usage_error: Optional[Exception] = None,
        sources_error: Optional[Exception] = None,
        hold_after: Optional[int] = None,
    ):
        super().__init__()
        self.chunks = list(chunks)
        self.usage_value = usage
        self.sources_value = list(sources or [])
        self.fail_at = fail_at
        self.usage_error = usage_error
        self.sources_error = sources_error
        self.hold_after = hold_after
        self.closed = False

    async def _generate(self):
        try:
            for index, chunk in enumerate(self.chunks):
                if index == self.fail_at:
                    raise RuntimeError("provider connection reset")
                if index == self.hold_after:
                    # stalls like an upstream that stopped sending
                    await asyncio.Event().wait()
                yield chunk
            if self.fail_at is not None and self.fail_at >= len(self.chunks):
                raise RuntimeError("provider connection reset")
            self._usage = self.usage_value
            self._sources = self.sources_value
        finally:
            self.closed = True

    async def usage(self):
        if self.usage_error is not None:
            await self._finished.wait()
            raise self.usage_error
        return await super().usage()

    async def sources(self):
        if self.sources_error is not None:
            await self._finished.wait()
            raise self.sources_error
        return await super().sources()


class ScriptedProvider(BaseProvider):
    """Replays the same script for every request and records what it was sent."""

    name = "scripted"

    def __init__(self, **script):
        self.script = script
        self.calls: List[dict] = []
        self.streams: List[ScriptedStream] = []

    def open_stream(self, messages, api_key=None, headers=None) -> ProviderStream:
        self.calls.append({"messages": messages, "api_key": api_key, "headers": dict(headers or {})})
        stream = ScriptedStream(**self.script)
        self.streams.append(stream)
        return stream


def build_app(repo: IChatRepository, provider: BaseProvider) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(chat_router)
    app.state.token_client = TokenClient(TEST_SECRET)
    app.state.session_service = SessionService(repo)
    app.state.llm_service = LLMService(provider)
    return app


def auth_headers_for(user_id: str) -> dict:
    token = TokenClient(TEST_SECRET).create_access_token(user_id)
    return {"Authorization": f"Bearer {token}"}


def parse_frames(body) -> List[Frame]:
    parser = FrameParser()
    return parser.feed(body) + parser.close()


@pytest.fixture
def repo() -> InMemoryChatRepository:
    return InMemoryChatRepository()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider(
        chunks=["Hello", ", ", "world"],
        usage=TokenUsage(input_tokens=12, output_tokens=3, total_tokens=15),
        sources=[Source(url="https://example.com/a", title="A"), Source(url="https://example.com/b")],
    )


@pytest.fixture
def session_service(repo) -> SessionService:
    return SessionService(repo)


@pytest.fixture
def app(repo, provider) -> FastAPI:
    return build_app(repo, provider)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def auth_headers() -> dict:
    return auth_headers_for(USER_ID)
