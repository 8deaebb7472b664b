"""Turn <-> stored message conversion and the finalize-time save."""

import httpx

from mcp_chat.exceptions import PersistenceError
from mcp_chat.logging import get_logger
from mcp_chat.models import StoredMessage, Turn, utcnow_iso
from mcp_chat.store import ChatStore, get_chat_store

log = get_logger(__name__)


def to_stored_messages(turns: list[Turn], chat_id: str) -> list[StoredMessage]:
    """One stored record per turn; parts are kept in order."""
    now = utcnow_iso()
    return [
        StoredMessage(
            id=turn.id,
            chat_id=chat_id,
            role=turn.role,
            content=turn.text() or turn.content,
            parts=[part.to_wire() for part in turn.parts],
            created_at=turn.created_at or now,
        )
        for turn in turns
    ]


def to_turns(messages: list[StoredMessage]) -> list[Turn]:
    """Rebuild turns from stored records for replay."""
    return [
        Turn.model_validate({
            "id": message.id,
            "role": message.role,
            "content": message.content,
            "parts": message.parts,
            "createdAt": message.created_at,
        })
        for message in messages
    ]


class PersistenceSync:
    """Writes finalized turns to the chat store.

    Saves are idempotent: message ids are upserted, so a retried save never
    duplicates rows.
    """

    def __init__(self, store: ChatStore | None = None):
        self._store = store

    @property
    def store(self) -> ChatStore:
        if self._store is None:
            self._store = get_chat_store()
        return self._store

    async def save(self, turns: list[Turn], chat_id: str, user_id: str | None = None) -> bool:
        """Persist turns; returns False (after logging) when storage fails."""
        if not turns:
            return True
        try:
            await self.store.save_messages(chat_id, to_stored_messages(turns, chat_id), user_id=user_id)
        except PersistenceError as e:
            log.error("Failed to save messages", chat_id=chat_id, error=str(e))
            return False
        log.info("Saved chat turns", chat_id=chat_id, count=len(turns))
        return True


class RemotePersistence:
    """Same contract as PersistenceSync, over the persistence write route."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def save(self, turns: list[Turn], chat_id: str, user_id: str | None = None) -> bool:
        headers = {"x-user-id": user_id} if user_id else {}
        try:
            response = await self.client.post(
                f"{self.base_url}/api/chat/messages",
                json={
                    "messages": [turn.to_wire() for turn in turns],
                    "chatId": chat_id,
                    "userId": user_id or "",
                },
                headers=headers,
            )
        except httpx.HTTPError as e:
            log.error("Failed to save messages", chat_id=chat_id, error=str(e))
            return False
        if not response.is_success:
            log.error("Failed to save messages", chat_id=chat_id, status=response.status_code)
            return False
        return bool(response.json().get("success", False))

    async def close(self) -> None:
        await self.client.aclose()
