# app/chat/client/api_client.py
from typing import AsyncIterator, List, Optional

import httpx

from app.chat.entity.chat import ChatSession
from app.core.config import settings
from app.core.logger import get_logger

logger = get_logger("ChatApiClient")


class ChatApiError(Exception):
    """Non-2xx answer from the chat API, carrying the envelope's message."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ChatApiError":
        message = f"Request failed ({response.status_code})"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("detail") or message
        return cls(response.status_code, str(message))


class ChatApiClient:
    """HTTP client for the chat endpoints; the bearer token is sent on every call."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        # Streams stay open as long as the provider keeps talking
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.CHAT_API_BASE_URL,
            timeout=httpx.Timeout(30.0, read=None),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def stream_turn(
        self,
        prompt: str,
        conversation_id: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """Raw body chunks of POST /chat/stream, as they arrive."""
        payload = {"prompt": prompt}
        if conversation_id:
            payload["conversationId"] = conversation_id
        if api_key:
            payload["apiKey"] = api_key

        async with self._client.stream(
            "POST",
            "/chat/stream",
            json=payload,
            headers={**self._headers(), "Accept": "text/event-stream"},
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                raise ChatApiError.from_response(response)
            async for chunk in response.aiter_bytes():
                yield chunk

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        if response.status_code >= 400:
            raise ChatApiError.from_response(response)
        return response.json().get("data") or {}

    async def list_sessions(self) -> List[ChatSession]:
        data = await self._request("GET", "/chat/history")
        return [ChatSession.model_validate(item) for item in data.get("sessions", [])]

    async def rename_session(self, session_id: str, title: str) -> ChatSession:
        data = await self._request("PATCH", f"/chat/session/{session_id}", json={"title": title})
        return ChatSession.model_validate(data["session"])

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/chat/session/{session_id}")
        logger.debug(f"Deleted session {session_id}")
