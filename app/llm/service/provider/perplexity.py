# app/llm/service/provider/perplexity.py
from typing import AsyncIterator, Dict, List, Optional, Tuple

import anyio
from openai import AsyncOpenAI

from app.chat.entity.chat import Source, TokenUsage
from app.core.config import settings
from app.llm.service.provider.base_provider import BaseProvider, ProviderStream


def _usage_from_chunk(usage) -> TokenUsage:
    return TokenUsage(
        input_tokens=getattr(usage, "prompt_tokens", None),
        output_tokens=getattr(usage, "completion_tokens", None),
        total_tokens=getattr(usage, "total_tokens", None),
    )


def _sources_from_chunk(chunk) -> List[Source]:
    # Perplexity adds these as extra fields on the OpenAI chunk shape
    search_results = getattr(chunk, "search_results", None) or []
    if search_results:
        sources = []
        for item in search_results:
            url = item.get("url") if isinstance(item, dict) else getattr(item, "url", None)
            title = item.get("title") if isinstance(item, dict) else getattr(item, "title", None)
            if url:
                sources.append(Source(url=url, title=title))
        return sources

    citations = getattr(chunk, "citations", None) or []
    return [Source(url=url) for url in citations if isinstance(url, str) and url]


class PerplexityStream(ProviderStream):
    def __init__(self, client: AsyncOpenAI, request: Dict, owns_client: bool = False):
        super().__init__()
        self._client = client
        self._request = request
        # A client built for a caller-supplied key lives only as long as this request
        self._owns_client = owns_client

    async def _generate(self) -> AsyncIterator[str]:
        response_stream = await self._client.chat.completions.create(**self._request, stream=True)
        try:
            async for event in response_stream:
                if getattr(event, "usage", None):
                    self._usage = _usage_from_chunk(event.usage)
                sources = _sources_from_chunk(event)
                if sources:
                    self._sources = sources

                delta = getattr(event.choices[0].delta, "content", None) if getattr(event, "choices", None) else None
                if delta:
                    yield delta
        finally:
            with anyio.CancelScope(shield=True):
                await response_stream.close()

    async def _release(self) -> None:
        if self._owns_client:
            await self._client.close()


class PerplexityProvider(BaseProvider):
    name = "perplexity"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.PERPLEXITY_API_KEY
        self.base_url = base_url or settings.PERPLEXITY_BASE_URL
        self.model = model or settings.PERPLEXITY_MODEL
        self.temperature = temperature if temperature is not None else settings.LLM_TEMPERATURE
        self._default_client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url) if self.api_key else None

    def is_enabled(self) -> bool:
        return self._default_client is not None

    def _client_for(self, api_key: Optional[str]) -> Tuple[AsyncOpenAI, bool]:
        """Client for this request and whether the request owns it."""
        if api_key:
            return AsyncOpenAI(api_key=api_key, base_url=self.base_url), True
        if self._default_client is None:
            raise RuntimeError("Perplexity disabled: missing API key")
        return self._default_client, False

    def open_stream(
        self,
        messages: List[Dict[str, str]],
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> ProviderStream:
        request = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if headers:
            request["extra_headers"] = headers
        client, owns_client = self._client_for(api_key)
        return PerplexityStream(client, request, owns_client=owns_client)
