# app/chat/client/conversation.py
"""
Client-side conversation state.

A turn is an optimistic overlay: the user message and an empty assistant
placeholder are shown immediately, frames are applied to the placeholder as
they arrive, and on ``done`` the overlay is replaced by the persisted
session from a fresh history listing.
"""

import asyncio
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import httpx
from pydantic import ValidationError

from app.chat.client.api_client import ChatApiClient, ChatApiError
from app.chat.client.frame_parser import FrameParser
from app.chat.entity.chat import (
    ChatMessage,
    ChatSession,
    KEY_CLASS_CUSTOM,
    KEY_CLASS_DEFAULT,
    TokenUsage,
    TurnMetadata,
)
from app.chat.entity.frame import Frame, FrameEvent
from app.core.logger import get_logger

logger = get_logger("ConversationState")

STREAM_FAILED_MESSAGE = "Stream failed"
CANCELLED_MESSAGE = "Request cancelled"


class ConversationStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConversationBusyError(RuntimeError):
    """Raised when the active conversation is changed while a turn is in flight."""


@dataclass
class ClientConfig:
    """Caller-supplied provider key, saved and cleared explicitly."""
    api_key: Optional[str] = None

    def save_api_key(self, value: Optional[str]) -> None:
        self.api_key = value.strip() if value and value.strip() else None

    def clear_api_key(self) -> None:
        self.api_key = None


@dataclass
class TurnResult:
    turn_id: str
    outcome: TurnOutcome
    conversation_id: Optional[str] = None
    error: Optional[str] = None


def _merge_usage(current: Optional[TokenUsage], incoming: Optional[TokenUsage]) -> Optional[TokenUsage]:
    if incoming is None:
        return current
    if current is None:
        return incoming
    return TokenUsage(
        input_tokens=incoming.input_tokens if incoming.input_tokens is not None else current.input_tokens,
        output_tokens=incoming.output_tokens if incoming.output_tokens is not None else current.output_tokens,
        total_tokens=incoming.total_tokens if incoming.total_tokens is not None else current.total_tokens,
    )


class ConversationStateMachine:
    """
    Single-writer state for one dashboard: the visible message list, the
    session sidebar, and at most one turn in flight.
    """

    def __init__(
        self,
        api: ChatApiClient,
        config: Optional[ClientConfig] = None,
        on_change: Optional[Callable[["ConversationStateMachine"], None]] = None,
    ):
        self.api = api
        self.config = config or ClientConfig()
        self.on_change = on_change

        self.status = ConversationStatus.IDLE
        self.messages: List[ChatMessage] = []
        self.sessions: List[ChatSession] = []
        self.active_session_id: Optional[str] = None

        self._turn_id: Optional[str] = None
        self._previous_session_id: Optional[str] = None
        self._placeholder_index: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._conversation_adopted = False
        self._terminal_seen = False
        self._turn_error: Optional[str] = None
        self._cancel_requested = False

    @property
    def is_sending(self) -> bool:
        return self.status == ConversationStatus.SENDING

    @property
    def placeholder(self) -> Optional[ChatMessage]:
        if self._placeholder_index is None:
            return None
        return self.messages[self._placeholder_index]

    def _notify(self) -> None:
        if self.on_change:
            self.on_change(self)

    # ----------------------------
    # Turn lifecycle
    # ----------------------------
    async def submit(self, prompt: Optional[str]) -> Optional[TurnResult]:
        """
        Send one turn and wait for it to settle. Returns None when there was
        nothing to send or a turn is already pending.
        """
        prompt = prompt.strip() if isinstance(prompt, str) else ""
        if not prompt or self.is_sending:
            return None

        api_key = self.config.api_key
        self.messages.append(ChatMessage(role="user", content=prompt))
        self.messages.append(
            ChatMessage(
                role="assistant",
                content="",
                api_key_type=KEY_CLASS_CUSTOM if api_key else KEY_CLASS_DEFAULT,
            )
        )
        self._placeholder_index = len(self.messages) - 1
        self._turn_id = str(uuid.uuid4())
        self._previous_session_id = self.active_session_id
        self._conversation_adopted = False
        self._terminal_seen = False
        self._turn_error = None
        self._cancel_requested = False
        self.status = ConversationStatus.SENDING
        self._notify()

        self._task = asyncio.ensure_future(self._stream_turn(prompt, self.active_session_id, api_key))
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                # The caller's task was cancelled; settle locally without
                # further awaits, then let the cancellation propagate
                if self._task is not None and not self._task.done():
                    self._task.cancel()
                self._abandon_turn()
                raise
            return await self._settle(TurnOutcome.CANCELLED, CANCELLED_MESSAGE)
        except (ChatApiError, httpx.HTTPError) as e:
            logger.warning(f"Turn {self._turn_id} failed before completion: {e}")
            return await self._settle(TurnOutcome.FAILED, str(e) or STREAM_FAILED_MESSAGE)

        if self._turn_error is not None:
            return await self._settle(TurnOutcome.FAILED, self._turn_error)
        return await self._settle(TurnOutcome.COMPLETED)

    async def _stream_turn(self, prompt: str, conversation_id: Optional[str], api_key: Optional[str]) -> None:
        parser = FrameParser()
        async with aclosing(self.api.stream_turn(prompt, conversation_id, api_key)) as chunks:
            async for chunk in chunks:
                for frame in parser.feed(chunk):
                    if self.apply_frame(frame):
                        return
        for frame in parser.close():
            if self.apply_frame(frame):
                return

    def apply_frame(self, frame: Frame) -> bool:
        """
        Apply one frame to the pending turn. Returns True once the turn has
        seen its terminal frame; anything after that is ignored.
        """
        placeholder = self.placeholder
        if self._terminal_seen or placeholder is None:
            return True

        payload = frame.json()
        if frame.event == FrameEvent.CONVERSATION.value:
            if not self._conversation_adopted:
                self.active_session_id = frame.data
                self._conversation_adopted = True

        elif frame.event == FrameEvent.DELTA.value:
            text = payload.get("text") if isinstance(payload, dict) else None
            if isinstance(text, str) and text:
                placeholder.content += text

        elif frame.event == FrameEvent.METADATA.value:
            if isinstance(payload, dict):
                self._merge_metadata(placeholder, payload)

        elif frame.event == FrameEvent.ERROR.value:
            message = payload.get("message") if isinstance(payload, dict) else None
            self._turn_error = message or STREAM_FAILED_MESSAGE
            placeholder.content = self._turn_error
            self._terminal_seen = True

        elif frame.event == FrameEvent.DONE.value:
            self._terminal_seen = True

        self._notify()
        return self._terminal_seen

    def _merge_metadata(self, placeholder: ChatMessage, payload: dict) -> None:
        try:
            metadata = TurnMetadata.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed metadata frame: {e}")
            return

        # null and absent both mean "keep what is there"
        placeholder.usage = _merge_usage(placeholder.usage, metadata.usage)
        if metadata.duration_ms is not None:
            placeholder.duration_ms = metadata.duration_ms
        if metadata.source_count is not None:
            placeholder.source_count = metadata.source_count
        if metadata.sources is not None:
            placeholder.sources = list(metadata.sources)
        if metadata.api_key_type is not None:
            placeholder.api_key_type = metadata.api_key_type

    def cancel(self) -> bool:
        """Abort the in-flight turn; a no-op when nothing is pending."""
        if self._task is None or self._task.done():
            return False
        self._cancel_requested = True
        self._task.cancel()
        return True

    def _release_turn(self, outcome: TurnOutcome, error: Optional[str] = None) -> TurnResult:
        """Apply the outcome to the placeholder and return to idle."""
        result = TurnResult(
            turn_id=self._turn_id,
            outcome=outcome,
            conversation_id=self.active_session_id,
            error=error,
        )

        if outcome == TurnOutcome.CANCELLED and self._placeholder_index is not None:
            del self.messages[self._placeholder_index]
        elif outcome == TurnOutcome.FAILED and self.placeholder is not None:
            self.placeholder.content = error or STREAM_FAILED_MESSAGE

        self.status = ConversationStatus.IDLE
        self._placeholder_index = None
        self._task = None
        self._notify()
        return result

    def _abandon_turn(self) -> None:
        result = self._release_turn(TurnOutcome.CANCELLED, CANCELLED_MESSAGE)
        # The server discards a session created by a turn that was cut off
        self.active_session_id = self._previous_session_id
        logger.info(f"Turn {result.turn_id} abandoned by caller | conversation_id={result.conversation_id}")

    async def _settle(self, outcome: TurnOutcome, error: Optional[str] = None) -> TurnResult:
        result = self._release_turn(outcome, error)

        await self.refresh_sessions()
        if outcome == TurnOutcome.COMPLETED:
            self._reconcile()
        elif self._find_session(self.active_session_id) is None:
            # The server rolled back a session this turn created
            self.active_session_id = self._previous_session_id
        logger.info(f"Turn {result.turn_id} {outcome.value} | conversation_id={result.conversation_id}")
        return result

    def _reconcile(self) -> None:
        session = self._find_session(self.active_session_id)
        if session is not None and session.messages:
            self.messages = [m.model_copy(deep=True) for m in session.messages]
            self._notify()

    # ----------------------------
    # Session sidebar
    # ----------------------------
    def _find_session(self, session_id: Optional[str]) -> Optional[ChatSession]:
        return next((s for s in self.sessions if s.id == session_id), None)

    def _ensure_idle(self) -> None:
        if self.is_sending:
            raise ConversationBusyError("Wait for the current reply to finish")

    async def refresh_sessions(self) -> List[ChatSession]:
        try:
            self.sessions = await self.api.list_sessions()
        except (ChatApiError, httpx.HTTPError) as e:
            logger.warning(f"Could not refresh history: {e}")
        self._notify()
        return self.sessions

    def select_session(self, session_id: str) -> ChatSession:
        self._ensure_idle()
        session = self._find_session(session_id)
        if session is None:
            raise KeyError(session_id)
        self.active_session_id = session.id
        self.messages = [m.model_copy(deep=True) for m in session.messages]
        self._notify()
        return session

    def start_new_chat(self) -> None:
        self._ensure_idle()
        self.active_session_id = None
        self.messages = []
        self._notify()

    async def rename_session(self, session_id: str, title: str) -> ChatSession:
        updated = await self.api.rename_session(session_id, title)
        self.sessions = [updated if s.id == session_id else s for s in self.sessions]
        self._notify()
        return updated

    async def delete_session(self, session_id: str) -> None:
        if session_id == self.active_session_id:
            self._ensure_idle()
        await self.api.delete_session(session_id)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if session_id == self.active_session_id:
            self.active_session_id = None
            self.messages = []
        self._notify()
