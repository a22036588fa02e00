from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional


class ChatStreamRequest(BaseModel):
    """Body of POST /chat/stream; accepts ``conversationId``/``apiKey`` or snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    prompt: Optional[str] = None
    conversation_id: Optional[str] = None
    api_key: Optional[str] = None


class RenameSessionDTO(BaseModel):
    # Length is checked after trimming, in the service
    title: Optional[str] = None


class BaseResponse(BaseModel):
    status: bool
    message: str
    data: dict | None = None
