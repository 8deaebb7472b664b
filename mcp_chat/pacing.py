"""Output pacing for streamed text."""

import asyncio
import re
from typing import AsyncIterator, Iterable, Literal

Chunking = Literal["line", "word"]

_CHUNK_PATTERNS: dict[str, re.Pattern[str]] = {
    "line": re.compile(r"[^\n]*\n"),
    "word": re.compile(r"\s*\S+\s+"),
}


def split_chunks(buffer: str, chunking: Chunking = "line") -> tuple[list[str], str]:
    """Split complete chunks off the front of ``buffer``.

    Returns the complete chunks and the remainder that is still waiting for
    its terminator.
    """
    pattern = _CHUNK_PATTERNS[chunking]
    chunks: list[str] = []
    pos = 0
    while True:
        match = pattern.match(buffer, pos)
        if not match or match.end() == pos:
            break
        chunks.append(match.group(0))
        pos = match.end()
    return chunks, buffer[pos:]


async def smooth_stream(
    deltas: Iterable[str] | AsyncIterator[str],
    delay_ms: int = 5,
    chunking: Chunking = "line",
    abort_event: asyncio.Event | None = None,
) -> AsyncIterator[str]:
    """Re-chunk text deltas and release them with a fixed delay between chunks.

    Content is never reordered or dropped; a trailing partial chunk is flushed
    when the input ends. Stops early once ``abort_event`` is set.
    """
    delay = max(0, delay_ms) / 1000.0
    buffer = ""

    async def _source() -> AsyncIterator[str]:
        if hasattr(deltas, "__aiter__"):
            async for item in deltas:  # type: ignore[union-attr]
                yield item
        else:
            for item in deltas:  # type: ignore[union-attr]
                yield item

    async for delta in _source():
        if abort_event is not None and abort_event.is_set():
            return
        buffer += delta
        chunks, buffer = split_chunks(buffer, chunking)
        for chunk in chunks:
            if abort_event is not None and abort_event.is_set():
                return
            yield chunk
            if delay:
                await asyncio.sleep(delay)

    if buffer and not (abort_event is not None and abort_event.is_set()):
        yield buffer
