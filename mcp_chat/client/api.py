"""HTTP client for the chat API."""

import asyncio
from typing import AsyncIterator

import httpx

from mcp_chat.config import get_config
from mcp_chat.exceptions import TransportError
from mcp_chat.logging import get_logger
from mcp_chat.models import ChatData, ChatRequest, ChatSummary, StreamEvent
from mcp_chat.protocol import decode_line

log = get_logger(__name__)

USER_ID_HEADER = "x-user-id"


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return fallback


class ChatApiClient:
    """Talks to the chat server on behalf of one user agent."""

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        cfg = get_config().client
        self.client = client or httpx.AsyncClient(
            base_url=base_url or cfg.base_url,
            timeout=timeout or cfg.timeout,
        )

    async def fetch_chat(self, chat_id: str, user_id: str) -> ChatData:
        """Load stored history; an unknown chat is an empty one.

        Raises:
            TransportError: any other non-success response or network failure
        """
        try:
            response = await self.client.get(
                f"/api/chats/{chat_id}",
                headers={USER_ID_HEADER: user_id},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to load chat: {e}") from e

        if response.status_code == 404:
            return ChatData.empty(chat_id)
        if not response.is_success:
            raise TransportError(
                _error_message(response, "Failed to load chat"),
                status_code=response.status_code,
            )
        return ChatData.model_validate(response.json())

    async def list_chats(self, user_id: str) -> list[ChatSummary]:
        try:
            response = await self.client.get("/api/chats", headers={USER_ID_HEADER: user_id})
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to list chats: {e}") from e
        if not response.is_success:
            raise TransportError(
                _error_message(response, "Failed to list chats"),
                status_code=response.status_code,
            )
        return [ChatSummary.model_validate(item) for item in response.json()]

    async def stream_chat(
        self,
        request: ChatRequest,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Submit a turn and yield its events as they arrive.

        Stops quietly once ``abort_event`` is set; closing the generator
        closes the underlying response.

        Raises:
            TransportError: non-success status or a broken stream
        """
        headers = {USER_ID_HEADER: request.user_id} if request.user_id else {}
        try:
            async with self.client.stream(
                "POST",
                "/api/chat",
                json=request.to_wire(),
                headers=headers,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise TransportError(
                        _error_message(response, f"Chat request failed with status {response.status_code}"),
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if abort_event is not None and abort_event.is_set():
                        log.debug("Chat stream aborted", chat_id=request.chat_id)
                        return
                    if not line.strip():
                        continue
                    yield decode_line(line)
        except httpx.HTTPError as e:
            raise TransportError(f"Chat stream failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()
