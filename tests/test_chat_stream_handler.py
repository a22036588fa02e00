import asyncio

import pytest
from starlette.responses import StreamingResponse

from app.chat.api.dto import ChatStreamRequest
from app.chat.api.handler import handle_chat_stream, prepare_turn
from app.chat.entity.chat import ChatMessage
from app.chat.service.session_service import SessionService
from app.core.exceptions import InvalidRequest
from app.llm.service.llm_service import CONVERSATION_ID_HEADER, LLMService
from app.llm.service.prompt import RESEARCH_ASSISTANT_SYSTEM_PROMPT

from conftest import InMemoryChatRepository, ScriptedProvider, USER_ID, parse_frames


async def _run_turn(session_service, provider, **body):
    """Drain one turn; returns (raw frames, raised error)."""
    ctx = await prepare_turn(session_service, USER_ID, ChatStreamRequest(**body))
    raw, error = [], None
    try:
        async for frame in handle_chat_stream(ctx, session_service, LLMService(provider)):
            raw.append(frame)
    except Exception as e:
        error = e
    return ctx, "".join(raw), error


def test_successful_turn_frame_order(repo, session_service, provider):
    ctx, body, error = asyncio.run(_run_turn(session_service, provider, prompt="What is X?"))
    assert error is None

    frames = parse_frames(body)
    assert [f.event for f in frames] == ["conversation", "delta", "delta", "delta", "metadata", "done"]
    assert frames[0].data == ctx.session.id
    assert [f.json()["text"] for f in frames[1:4]] == ["Hello", ", ", "world"]
    assert frames[-1].data == "ok"

    metadata = frames[4].json()
    assert metadata["usage"] == {"inputTokens": 12, "outputTokens": 3, "totalTokens": 15}
    assert metadata["sourceCount"] == 2
    assert metadata["sources"][0] == {"url": "https://example.com/a", "title": "A"}
    assert metadata["apiKeyType"] == "default"
    assert isinstance(metadata["durationMs"], int) and metadata["durationMs"] >= 0

    stored = repo.sessions[ctx.session.id]
    assert [m.content for m in stored.messages] == ["What is X?", "Hello, world"]
    assert stored.messages[1].source_count == 2


def test_provider_request_carries_history_key_and_conversation_header(repo, session_service, provider):
    async def run():
        session = await repo.create_session(USER_ID, "Existing")
        session.messages = [
            ChatMessage(role="user", content="first"),
            ChatMessage(role="assistant", content="reply"),
        ]
        await repo.save_session(session)
        return session, await _run_turn(
            session_service, provider, prompt="second", conversationId=session.id, apiKey="  pplx-mine  "
        )

    session, (ctx, body, error) = asyncio.run(run())
    assert error is None
    call = provider.calls[0]
    assert call["messages"] == [
        {"role": "system", "content": RESEARCH_ASSISTANT_SYSTEM_PROMPT},
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
    ]
    assert call["api_key"] == "pplx-mine"
    assert call["headers"] == {CONVERSATION_ID_HEADER: session.id}

    frames = parse_frames(body)
    assert frames[0].data == session.id
    assert frames[-2].json()["apiKeyType"] == "custom"
    assert len(repo.sessions[session.id].messages) == 4
    assert repo.sessions[session.id].title == "Existing"


def test_usage_and_source_failures_are_tolerated(repo, session_service):
    provider = ScriptedProvider(
        chunks=["ok"],
        usage_error=RuntimeError("usage endpoint down"),
        sources_error=RuntimeError("citations missing"),
    )
    ctx, body, error = asyncio.run(_run_turn(session_service, provider, prompt="hi"))
    assert error is None

    frames = parse_frames(body)
    assert [f.event for f in frames] == ["conversation", "delta", "metadata", "done"]
    metadata = frames[2].json()
    assert metadata["usage"] is None
    assert metadata["sourceCount"] == 0
    assert metadata["sources"] == []
    assert len(repo.sessions[ctx.session.id].messages) == 2


def test_empty_chunks_are_not_framed(repo, session_service):
    provider = ScriptedProvider(chunks=["", "a", "", "b"])
    _, body, _ = asyncio.run(_run_turn(session_service, provider, prompt="hi"))
    deltas = [f.json()["text"] for f in parse_frames(body) if f.event == "delta"]
    assert deltas == ["a", "b"]


def test_provider_failure_emits_error_and_removes_new_session(repo, session_service):
    provider = ScriptedProvider(chunks=["partial ", "answer", "never"], fail_at=2)
    ctx, body, error = asyncio.run(_run_turn(session_service, provider, prompt="What is X?"))

    assert isinstance(error, RuntimeError)
    frames = parse_frames(body)
    assert [f.event for f in frames] == ["conversation", "delta", "delta", "error"]
    assert frames[-1].json() == {"message": "Stream interrupted"}
    assert "connection reset" not in body
    assert ctx.session.id not in repo.sessions


def test_provider_failure_keeps_existing_session_unchanged(repo, session_service):
    provider = ScriptedProvider(chunks=["x"], fail_at=1)

    async def run():
        session = await repo.create_session(USER_ID, "Keep me")
        session.messages = [ChatMessage(role="user", content="q"), ChatMessage(role="assistant", content="a")]
        await repo.save_session(session)
        before = repo.sessions[session.id].model_copy(deep=True)
        result = await _run_turn(session_service, provider, prompt="again", conversationId=session.id)
        return before, result

    before, (ctx, body, error) = asyncio.run(run())
    assert error is not None
    assert parse_frames(body)[-1].event == "error"
    assert repo.sessions[ctx.session.id].messages == before.messages


def test_store_failure_after_metadata_is_reported_in_band(repo, session_service, provider):
    async def run():
        ctx = await prepare_turn(session_service, USER_ID, ChatStreamRequest(prompt="hi"))
        repo.fail_saves = True
        raw, error = [], None
        try:
            async for frame in handle_chat_stream(ctx, session_service, LLMService(provider)):
                raw.append(frame)
        except Exception as e:
            error = e
        return ctx, "".join(raw), error

    ctx, body, error = asyncio.run(run())
    assert isinstance(error, RuntimeError)
    assert [f.event for f in parse_frames(body)][-2:] == ["metadata", "error"]
    assert ctx.session.id not in repo.sessions


def test_client_disconnect_after_two_deltas_rolls_back(repo, session_service):
    provider = ScriptedProvider(chunks=["one ", "two ", "three ", "four"])

    async def run():
        ctx = await prepare_turn(session_service, USER_ID, ChatStreamRequest(prompt="cancel me"))
        stream = handle_chat_stream(ctx, session_service, LLMService(provider))
        received = [await stream.__anext__() for _ in range(3)]
        await stream.aclose()
        return ctx, "".join(received)

    ctx, body = asyncio.run(run())
    assert [f.event for f in parse_frames(body)] == ["conversation", "delta", "delta", "done"]
    assert ctx.session.id not in repo.sessions
    assert provider.streams[0].closed


class SlowStoreRepository(InMemoryChatRepository):
    """Deletes only after yielding to the loop, like a networked store."""

    async def delete_session(self, session_id: str, user_id: str) -> bool:
        await asyncio.sleep(0.01)
        return await super().delete_session(session_id, user_id)


def test_http_disconnect_mid_stream_removes_new_session():
    repo = SlowStoreRepository()
    session_service = SessionService(repo)
    provider = ScriptedProvider(chunks=["one ", "two ", "three "], hold_after=2)
    sent = []

    async def receive():
        await asyncio.sleep(0.2)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    async def run():
        ctx = await prepare_turn(session_service, USER_ID, ChatStreamRequest(prompt="cancel me"))
        response = StreamingResponse(
            handle_chat_stream(ctx, session_service, LLMService(provider)),
            media_type="text/event-stream",
        )
        scope = {"type": "http", "method": "POST", "path": "/chat/stream", "headers": []}
        await asyncio.wait_for(response(scope, receive, send), 5)
        return ctx

    ctx = asyncio.run(run())
    body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    assert [f.event for f in parse_frames(body)] == ["conversation", "delta", "delta", "done"]
    assert ctx.session.id not in repo.sessions
    assert provider.streams[0].closed


def test_client_disconnect_on_existing_session_adds_nothing(repo, session_service):
    provider = ScriptedProvider(chunks=["one ", "two ", "three "])

    async def run():
        session = await repo.create_session(USER_ID, "Ongoing")
        ctx = await prepare_turn(
            session_service, USER_ID, ChatStreamRequest(prompt="cancel me", conversation_id=session.id)
        )
        stream = handle_chat_stream(ctx, session_service, LLMService(provider))
        for _ in range(3):
            await stream.__anext__()
        await stream.aclose()
        return session

    session = asyncio.run(run())
    assert repo.sessions[session.id].messages == []
    assert repo.save_calls == 0


def test_prepare_turn_validates_before_streaming(repo, session_service):
    with pytest.raises(InvalidRequest):
        asyncio.run(prepare_turn(session_service, USER_ID, ChatStreamRequest(prompt="   ")))
    with pytest.raises(InvalidRequest):
        asyncio.run(prepare_turn(session_service, USER_ID, ChatStreamRequest(prompt="hi", conversationId="123")))
    assert repo.sessions == {}

    ctx = asyncio.run(prepare_turn(session_service, USER_ID, ChatStreamRequest(prompt="  hi  ", apiKey="   ")))
    assert ctx.prompt == "hi"
    assert ctx.api_key is None
    assert ctx.key_class == "default"
    assert ctx.created
