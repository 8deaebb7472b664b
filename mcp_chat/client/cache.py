"""Client-side query cache with explicit invalidation."""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

from mcp_chat.logging import get_logger

log = get_logger(__name__)

CacheKey = tuple[Hashable, ...]
Subscriber = Callable[[CacheKey], None]


def chat_key(chat_id: str, user_id: str) -> CacheKey:
    return ("chat", chat_id, user_id)


def chats_key(user_id: str) -> CacheKey:
    return ("chats", user_id)


@dataclass
class _Entry:
    value: Any
    fetched_at: float
    stale: bool = False


class QueryCache:
    """A mapping of query keys to fetched values.

    Invalidation marks matching entries stale and notifies subscribers; the
    next ``fetch`` for a stale key reloads it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[CacheKey, _Entry] = {}
        self._subscribers: list[Subscriber] = []
        self._clock = clock

    def get(self, key: CacheKey) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = _Entry(value=value, fetched_at=self._clock())
        self._notify(key)

    def is_stale(self, key: CacheKey, stale_after: float | None = None) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return True
        if stale_after is None:
            return False
        return self._clock() - entry.fetched_at >= stale_after

    async def fetch(
        self,
        key: CacheKey,
        loader: Callable[[], Awaitable[Any]],
        stale_after: float | None = None,
    ) -> Any:
        """Return the cached value, loading it when missing or stale."""
        if not self.is_stale(key, stale_after):
            return self._entries[key].value
        value = await loader()
        self.set(key, value)
        return value

    def invalidate(self, prefix: CacheKey) -> int:
        """Mark every entry whose key starts with ``prefix`` stale."""
        matched = [key for key in self._entries if key[: len(prefix)] == prefix]
        for key in matched:
            self._entries[key].stale = True
        log.debug("Cache invalidated", prefix=prefix, entries=len(matched))
        self._notify(prefix)
        return len(matched)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, key: CacheKey) -> None:
        for callback in list(self._subscribers):
            try:
                callback(key)
            except Exception as e:
                log.warning("Cache subscriber failed", key=key, error=str(e))
