# app/chat/repository/chat_repository.py

import uuid
from typing import List, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.chat.entity.chat import ChatMessage, ChatSession, utcnow
from app.chat.repository.sql_schema.chat_session import ChatSessionModel
from app.chat.service.service import IChatRepository
from app.core.exceptions import NotFound
from pkg.db_util.postgres_conn import PostgresConnection
from pkg.log.logger import get_logger

logger = get_logger(__name__)


class ChatRepository(IChatRepository):
    """Stores chat sessions as documents in Postgres (messages embedded as JSONB)."""

    def __init__(self, postgres: PostgresConnection):
        self.postgres = postgres
        self.logger = logger

    # ────────────────────────────────────────────────
    # Helpers
    # ────────────────────────────────────────────────

    @staticmethod
    async def _get_owned(session: AsyncSession, session_id: str, user_id: str) -> Optional[ChatSessionModel]:
        result = await session.execute(
            select(ChatSessionModel).where(
                ChatSessionModel.id == session_id,
                ChatSessionModel.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_entity(row: ChatSessionModel) -> ChatSession:
        return ChatSession(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            messages=[ChatMessage.model_validate(m) for m in (row.messages or [])],
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ────────────────────────────────────────────────
    # Session CRUD
    # ────────────────────────────────────────────────

    async def create_session(self, user_id: str, title: str) -> ChatSession:
        async with self.postgres.get_session() as session:
            now = utcnow()
            row = ChatSessionModel(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                messages=[],
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            await session.commit()
            self.logger.info(f"Chat session created: {row.id}")
            return self._to_entity(row)

    async def find_session(self, session_id: str, user_id: str) -> Optional[ChatSession]:
        async with self.postgres.get_session() as session:
            row = await self._get_owned(session, session_id, user_id)
            return self._to_entity(row) if row else None

    async def save_session(self, chat: ChatSession) -> ChatSession:
        async with self.postgres.get_session() as session:
            row = await self._get_owned(session, chat.id, chat.user_id)
            if row is None:
                raise NotFound(f"Chat session {chat.id} not found")
            # Whole-array replacement; the JSON column is not mutation-tracked
            row.title = chat.title
            row.messages = [m.to_wire() for m in chat.messages]
            row.updated_at = utcnow()
            await session.commit()
            self.logger.debug(f"Chat session {chat.id} saved with {len(chat.messages)} messages")
            return self._to_entity(row)

    async def update_title(self, session_id: str, user_id: str, title: str) -> Optional[ChatSession]:
        async with self.postgres.get_session() as session:
            row = await self._get_owned(session, session_id, user_id)
            if row is None:
                return None
            row.title = title
            row.updated_at = utcnow()
            await session.commit()
            return self._to_entity(row)

    async def delete_session(self, session_id: str, user_id: str) -> bool:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                delete(ChatSessionModel).where(
                    ChatSessionModel.id == session_id,
                    ChatSessionModel.user_id == user_id,
                )
            )
            await session.commit()
            deleted = (result.rowcount or 0) > 0
            if deleted:
                self.logger.info(f"Deleted chat session {session_id}")
            return deleted

    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        async with self.postgres.get_session() as session:
            result = await session.execute(
                select(ChatSessionModel)
                .where(ChatSessionModel.user_id == user_id)
                .order_by(ChatSessionModel.updated_at.desc())
            )
            return [self._to_entity(row) for row in result.scalars().all()]
