import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncGenerator, List, Optional

import anyio

from app.chat.api.dto import ChatStreamRequest
from app.chat.entity.chat import ChatSession, KeyClass, Source, TokenUsage, TurnMetadata
from app.chat.entity.frame import (
    conversation_frame,
    delta_frame,
    done_frame,
    error_frame,
    metadata_frame,
)
from app.chat.service.session_service import SessionService
from app.chat.service.turn_transaction import TurnTransaction
from app.core.exceptions import InvalidRequest, UpstreamFailure
from app.core.logger import get_logger
from app.llm.service.llm_service import LLMService
from app.llm.service.provider.base_provider import ProviderStream

logger = get_logger("ChatHandler")


@dataclass
class TurnContext:
    """Everything a turn needs once the request has been validated."""
    user_id: str
    prompt: str
    session: ChatSession
    created: bool
    api_key: Optional[str] = None
    started: float = field(default_factory=time.perf_counter)

    @property
    def key_class(self) -> KeyClass:
        return LLMService.key_class(self.api_key)


def _clean(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


async def prepare_turn(
    session_service: SessionService,
    user_id: str,
    body: ChatStreamRequest,
) -> TurnContext:
    """
    Validate a stream request and resolve its session.

    Runs before the response starts, so failures here become plain HTTP
    errors (400 for a blank prompt or malformed conversation id).
    """
    started = time.perf_counter()
    prompt = _clean(body.prompt)
    if not prompt:
        raise InvalidRequest("Prompt is required")

    session, created = await session_service.resolve_for_turn(
        user_id, prompt, _clean(body.conversation_id)
    )
    return TurnContext(
        user_id=user_id,
        prompt=prompt,
        session=session,
        created=created,
        api_key=_clean(body.api_key),
        started=started,
    )


async def _resolve_usage(stream: ProviderStream) -> Optional[TokenUsage]:
    try:
        return await stream.usage()
    except Exception as e:
        logger.warning(f"Usage unavailable: {e}")
        return None


async def _resolve_sources(stream: ProviderStream) -> List[Source]:
    try:
        return await stream.sources()
    except Exception as e:
        logger.warning(f"Sources unavailable: {e}")
        return []


async def _rollback(transaction: TurnTransaction) -> None:
    # Runs while the response task is being cancelled on disconnect
    try:
        with anyio.CancelScope(shield=True):
            await transaction.rollback()
    except Exception as e:
        logger.error(f"Rollback failed | session_id={transaction.session.id} error={e}", exc_info=True)


async def handle_chat_stream(
    ctx: TurnContext,
    session_service: SessionService,
    llm_service: LLMService,
) -> AsyncGenerator[str, None]:
    """
    Stream one turn as SSE frames.

    conversation → delta* → metadata → done on success. A failure after the
    stream opened yields a single ``error`` frame and leaves the session as
    it was before the turn; a client disconnect does the same silently.
    """
    session_id = ctx.session.id
    history = list(ctx.session.messages)
    transaction = TurnTransaction(session_service, ctx.session, ctx.created)
    parts: List[str] = []

    try:
        yield conversation_frame(session_id)

        stream = llm_service.open_turn_stream(history, ctx.prompt, session_id, ctx.api_key)
        async with aclosing(stream.text_stream()) as chunks:
            async for chunk in chunks:
                if not chunk:
                    continue
                parts.append(chunk)
                yield delta_frame(chunk)

        usage, sources = await asyncio.gather(_resolve_usage(stream), _resolve_sources(stream))
        metadata = TurnMetadata(
            usage=usage,
            duration_ms=int((time.perf_counter() - ctx.started) * 1000),
            source_count=len(sources),
            sources=sources,
            api_key_type=ctx.key_class,
        )
        yield metadata_frame(metadata)

        await transaction.commit(ctx.prompt, "".join(parts), metadata)
        yield done_frame()

    except (GeneratorExit, asyncio.CancelledError):
        logger.info(f"Client went away mid-turn | session_id={session_id} deltas={len(parts)}")
        await _rollback(transaction)
        raise

    except Exception as e:
        logger.error(f"Streaming error | session_id={session_id} error={e}", exc_info=True)
        try:
            yield error_frame(UpstreamFailure.public_message)
        finally:
            await _rollback(transaction)
        raise
