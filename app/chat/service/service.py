from abc import ABC, abstractmethod
from typing import List, Optional

from app.chat.entity.chat import ChatSession


class IChatRepository(ABC):
    """Document store contract: every lookup is scoped by id and owner."""

    @abstractmethod
    async def create_session(self, user_id: str, title: str) -> ChatSession:
        pass

    @abstractmethod
    async def find_session(self, session_id: str, user_id: str) -> Optional[ChatSession]:
        pass

    @abstractmethod
    async def save_session(self, session: ChatSession) -> ChatSession:
        """Persist title and the full message list; refreshes updated_at."""
        pass

    @abstractmethod
    async def update_title(self, session_id: str, user_id: str, title: str) -> Optional[ChatSession]:
        pass

    @abstractmethod
    async def delete_session(self, session_id: str, user_id: str) -> bool:
        pass

    @abstractmethod
    async def list_sessions(self, user_id: str) -> List[ChatSession]:
        """All sessions of a user, most recently updated first."""
        pass
