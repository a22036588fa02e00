# app/llm/service/provider/base_provider.py
import asyncio
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator, Dict, List, Optional

import anyio

from app.chat.entity.chat import Source, TokenUsage


class ProviderStream(ABC):
    """
    One provider request in flight.

    ``text_stream()`` yields token chunks in provider order. ``usage()`` and
    ``sources()`` resolve once the text stream has finished; if the stream
    failed, they raise that failure. Closing the text stream early closes
    the upstream response and releases whatever the request held.
    """

    def __init__(self):
        self._finished = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._usage: Optional[TokenUsage] = None
        self._sources: List[Source] = []

    @abstractmethod
    def _generate(self) -> AsyncIterator[str]:
        """Provider-specific chunk generator; may set _usage/_sources as it goes."""

    async def _release(self) -> None:
        """Per-request cleanup, run once the text stream ends for any reason."""

    async def text_stream(self) -> AsyncGenerator[str, None]:
        try:
            async with aclosing(self._generate()) as chunks:
                async for chunk in chunks:
                    yield chunk
        except Exception as e:
            self._error = e
            raise
        finally:
            try:
                with anyio.CancelScope(shield=True):
                    await self._release()
            finally:
                self._finished.set()

    async def usage(self) -> Optional[TokenUsage]:
        await self._finished.wait()
        if self._error is not None:
            raise self._error
        return self._usage

    async def sources(self) -> List[Source]:
        await self._finished.wait()
        if self._error is not None:
            raise self._error
        return list(self._sources)


class BaseProvider(ABC):
    """Abstract base provider for all LLM integrations."""

    name: str = "base"

    @abstractmethod
    def open_stream(
        self,
        messages: List[Dict[str, str]],
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> ProviderStream:
        """Prepare a streaming request; nothing is sent until the text stream is iterated."""

    def is_enabled(self) -> bool:
        """Whether a process-wide default key is configured."""
        return True
