import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from redis.exceptions import RedisError

from app.chat.entity.chat import (
    ChatSession,
    DEFAULT_CHAT_TITLE,
    MAX_TITLE_LENGTH,
    NEW_SESSION_TITLE_LENGTH,
)
from app.chat.service.service import IChatRepository
from app.core.config import settings
from app.core.exceptions import InvalidRequest, NotFound
from app.core.logger import get_logger
from pkg.redis.client import RedisClient

logger = get_logger(__name__)


class SessionService:
    """
    Owner-scoped chat session operations:
    - Repository → authoritative session documents.
    - Redis (optional) → short-lived cache of each user's history listing,
      dropped on every write that touches one of the user's sessions.
    """

    def __init__(
        self,
        repository: IChatRepository,
        redis_client: Optional[RedisClient] = None,
        cache_ttl: int = settings.HISTORY_CACHE_TTL,
    ):
        self.repository = repository
        self.redis_client = redis_client
        self.cache_ttl = timedelta(seconds=cache_ttl)

    # ----------------------------
    # Validation
    # ----------------------------
    @staticmethod
    def is_valid_session_id(session_id: Optional[str]) -> bool:
        if not session_id or not isinstance(session_id, str):
            return False
        try:
            uuid.UUID(session_id)
            return True
        except (ValueError, TypeError):
            return False

    @classmethod
    def validate_session_id(cls, session_id: Optional[str]) -> str:
        if not cls.is_valid_session_id(session_id):
            raise InvalidRequest("Invalid chat id")
        return session_id

    @staticmethod
    def validate_title(title: Optional[str]) -> str:
        cleaned = title.strip() if isinstance(title, str) else ""
        if not cleaned:
            raise InvalidRequest("Title is required")
        if len(cleaned) > MAX_TITLE_LENGTH:
            raise InvalidRequest(f"Title must be {MAX_TITLE_LENGTH} characters or fewer")
        return cleaned

    # ----------------------------
    # History cache
    # ----------------------------
    def _history_key(self, user_id: str) -> str:
        return f"chat:history:{user_id}"

    async def _cached_history(self, user_id: str) -> Optional[List[ChatSession]]:
        if not self.redis_client:
            return None
        try:
            cached = await self.redis_client.get_json(self._history_key(user_id))
        except RedisError as e:
            logger.warning(f"History cache read failed for user_id={user_id}: {e}")
            return None
        if not isinstance(cached, list):
            return None
        return [ChatSession.model_validate(item) for item in cached]

    async def _store_history(self, user_id: str, sessions: List[ChatSession]) -> None:
        if not self.redis_client:
            return
        try:
            await self.redis_client.set_json(
                self._history_key(user_id),
                [s.to_wire() for s in sessions],
                ttl=self.cache_ttl,
            )
        except RedisError as e:
            logger.warning(f"History cache write failed for user_id={user_id}: {e}")

    async def invalidate_history(self, user_id: str) -> None:
        if not self.redis_client:
            return
        try:
            await self.redis_client.delete(self._history_key(user_id))
        except RedisError as e:
            logger.warning(f"History cache invalidation failed for user_id={user_id}: {e}")

    # ----------------------------
    # Session operations
    # ----------------------------
    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        """All of the user's sessions, most recently updated first."""
        cached = await self._cached_history(user_id)
        if cached is not None:
            return cached
        sessions = await self.repository.list_sessions(user_id)
        await self._store_history(user_id, sessions)
        return sessions

    async def rename_session(self, session_id: str, user_id: str, title: Optional[str]) -> ChatSession:
        self.validate_session_id(session_id)
        cleaned = self.validate_title(title)
        updated = await self.repository.update_title(session_id, user_id, cleaned)
        if updated is None:
            raise NotFound("Chat not found")
        await self.invalidate_history(user_id)
        logger.info(f"Renamed chat session {session_id} to '{cleaned}'")
        return updated

    async def delete_session(self, session_id: str, user_id: str) -> None:
        self.validate_session_id(session_id)
        deleted = await self.repository.delete_session(session_id, user_id)
        if not deleted:
            raise NotFound("Chat not found")
        await self.invalidate_history(user_id)

    async def resolve_for_turn(
        self, user_id: str, prompt: str, conversation_id: Optional[str] = None
    ) -> Tuple[ChatSession, bool]:
        """
        Load the caller's session for a turn, or create one.

        Returns ``(session, created)``. A malformed id is rejected; a
        well-formed id that is unknown or owned by someone else starts a
        fresh session.
        """
        if conversation_id:
            self.validate_session_id(conversation_id)
            session = await self.repository.find_session(conversation_id, user_id)
            if session is not None:
                return session, False
            logger.debug(f"Conversation {conversation_id} not found for user_id={user_id}; creating a new one")

        title = prompt[:NEW_SESSION_TITLE_LENGTH] or DEFAULT_CHAT_TITLE
        session = await self.repository.create_session(user_id, title)
        await self.invalidate_history(user_id)
        return session, True

    async def save(self, session: ChatSession) -> ChatSession:
        saved = await self.repository.save_session(session)
        await self.invalidate_history(session.user_id)
        return saved

    async def discard(self, session: ChatSession) -> bool:
        """Remove a session created by a turn that did not complete."""
        deleted = await self.repository.delete_session(session.id, session.user_id)
        await self.invalidate_history(session.user_id)
        return deleted
