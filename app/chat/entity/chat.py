# app/chat/entity/chat.py
"""
Models for chat sessions and their embedded messages.

Attributes are snake_case; the JSON shape (wire and stored document) is
camelCase, e.g. ``durationMs`` and ``apiKeyType``.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_CHAT_TITLE = "New Conversation"
# Titles that count as "not named yet" when a turn commits
PLACEHOLDER_TITLES = frozenset({"", DEFAULT_CHAT_TITLE, "Conversation"})
MAX_TITLE_LENGTH = 120
NEW_SESSION_TITLE_LENGTH = 60
COMMITTED_TITLE_LENGTH = 80

KEY_CLASS_DEFAULT = "default"
KEY_CLASS_CUSTOM = "custom"

MessageRole = Literal["user", "assistant"]
KeyClass = Literal["default", "custom"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TokenUsage(CamelModel):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    def is_empty(self) -> bool:
        return self.input_tokens is None and self.output_tokens is None and self.total_tokens is None


class Source(CamelModel):
    url: str
    title: Optional[str] = None


class TurnMetadata(CamelModel):
    """Summary attached to an assistant message once its stream has ended."""
    usage: Optional[TokenUsage] = None
    duration_ms: Optional[int] = None
    source_count: Optional[int] = None
    sources: Optional[List[Source]] = None
    api_key_type: Optional[KeyClass] = None


class ChatMessage(CamelModel):
    role: MessageRole
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    # Assistant-only fields, written once after the terminal frame
    usage: Optional[TokenUsage] = None
    duration_ms: Optional[int] = None
    source_count: Optional[int] = None
    sources: List[Source] = Field(default_factory=list)
    api_key_type: Optional[KeyClass] = None

    @classmethod
    def assistant(cls, content: str, metadata: TurnMetadata) -> "ChatMessage":
        return cls(
            role="assistant",
            content=content,
            usage=metadata.usage,
            duration_ms=metadata.duration_ms,
            source_count=metadata.source_count,
            sources=list(metadata.sources or []),
            api_key_type=metadata.api_key_type,
        )

    def history_entry(self) -> dict:
        """Role/content pair as sent to the provider."""
        return {"role": self.role, "content": self.content}


class ChatSession(CamelModel):
    """A conversation owned by one user, messages embedded in order."""
    id: str
    user_id: str
    title: str = DEFAULT_CHAT_TITLE
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_real_title(self) -> bool:
        return bool(self.title) and self.title.strip() not in PLACEHOLDER_TITLES
