# app/chat/entity/frame.py
"""
Wire format for the chat stream.

Each frame is ``event: <tag>`` then ``data: <payload>`` followed by a blank
line. Payloads are single-line: JSON is compact and escapes newlines.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from app.chat.entity.chat import TurnMetadata

FRAME_SEPARATOR = "\n\n"
DONE_PAYLOAD = "ok"
DEFAULT_EVENT = "message"


class FrameEvent(str, Enum):
    CONVERSATION = "conversation"
    DELTA = "delta"
    METADATA = "metadata"
    ERROR = "error"
    DONE = "done"


TERMINAL_EVENTS = frozenset({FrameEvent.ERROR.value, FrameEvent.DONE.value})


@dataclass(frozen=True)
class Frame:
    event: str
    data: str

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def json(self) -> Optional[Any]:
        """Decoded JSON payload, or None when the payload is not JSON."""
        try:
            return json.loads(self.data)
        except (TypeError, ValueError):
            return None


def _compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def encode_frame(event: str, data: str) -> str:
    if "\n" in data or "\r" in data:
        raise ValueError(f"Frame payload for '{event}' must be a single line")
    return f"event: {event}\ndata: {data}{FRAME_SEPARATOR}"


def conversation_frame(session_id: str) -> str:
    return encode_frame(FrameEvent.CONVERSATION.value, session_id)


def delta_frame(text: str) -> str:
    return encode_frame(FrameEvent.DELTA.value, _compact({"text": text}))


def metadata_frame(metadata: TurnMetadata) -> str:
    return encode_frame(FrameEvent.METADATA.value, _compact(metadata.to_wire()))


def error_frame(message: str) -> str:
    return encode_frame(FrameEvent.ERROR.value, _compact({"message": message}))


def done_frame() -> str:
    return encode_frame(FrameEvent.DONE.value, DONE_PAYLOAD)
