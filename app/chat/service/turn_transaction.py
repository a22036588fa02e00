from app.chat.entity.chat import (
    ChatMessage,
    ChatSession,
    COMMITTED_TITLE_LENGTH,
    DEFAULT_CHAT_TITLE,
    TurnMetadata,
    utcnow,
)
from app.chat.service.session_service import SessionService
from app.core.logger import get_logger

logger = get_logger(__name__)


class TurnTransaction:
    """
    Appends one user/assistant pair to a session, or nothing at all.

    The message count at construction is the checkpoint. ``commit`` pushes
    both messages and saves the whole document; ``rollback`` truncates back
    to the checkpoint and deletes the session if this turn created it.
    """

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"

    def __init__(self, sessions: SessionService, session: ChatSession, created: bool):
        self.sessions = sessions
        self.session = session
        self.created = created
        self.checkpoint = len(session.messages)
        self.started_at = utcnow()
        self.state = self.OPEN

    async def commit(self, prompt: str, content: str, metadata: TurnMetadata) -> ChatSession:
        if self.state != self.OPEN:
            raise RuntimeError(f"Cannot commit a turn that is {self.state}")

        self.session.messages.append(ChatMessage(role="user", content=prompt, created_at=self.started_at))
        self.session.messages.append(ChatMessage.assistant(content, metadata))
        if not self.session.has_real_title():
            self.session.title = prompt[:COMMITTED_TITLE_LENGTH] or DEFAULT_CHAT_TITLE

        try:
            saved = await self.sessions.save(self.session)
        except Exception:
            del self.session.messages[self.checkpoint:]
            raise

        self.state = self.COMMITTED
        logger.info(f"Turn committed | session_id={self.session.id} messages={len(saved.messages)}")
        return saved

    async def rollback(self) -> None:
        if self.state == self.COMMITTED:
            raise RuntimeError("Cannot roll back a committed turn")
        if self.state == self.ROLLED_BACK:
            return

        del self.session.messages[self.checkpoint:]
        self.state = self.ROLLED_BACK
        if self.created:
            await self.sessions.discard(self.session)
            logger.info(f"Turn rolled back; removed new session {self.session.id}")
        else:
            logger.info(f"Turn rolled back | session_id={self.session.id} checkpoint={self.checkpoint}")
