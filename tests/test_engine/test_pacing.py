import asyncio

import pytest

from mcp_chat.pacing import smooth_stream, split_chunks


def test_split_chunks_by_line_keeps_remainder():
    chunks, rest = split_chunks("one\ntwo\nthr", "line")

    assert chunks == ["one\n", "two\n"]
    assert rest == "thr"


def test_split_chunks_by_word():
    chunks, rest = split_chunks("  hello big world", "word")

    assert chunks == ["  hello ", "big "]
    assert rest == "world"


async def _collect(stream) -> list[str]:
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_smooth_stream_never_reorders_or_drops():
    async def deltas():
        for piece in ["Hel", "lo\nwor", "ld\n\nbye"]:
            yield piece

    chunks = await _collect(smooth_stream(deltas(), delay_ms=0))

    assert chunks == ["Hello\n", "world\n", "\n", "bye"]
    assert "".join(chunks) == "Hello\nworld\n\nbye"


@pytest.mark.asyncio
async def test_smooth_stream_waits_between_chunks(monkeypatch):
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds):
        delays.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr("mcp_chat.pacing.asyncio.sleep", fake_sleep)

    chunks = await _collect(smooth_stream(["a\nb\nc"], delay_ms=5))

    assert chunks == ["a\n", "b\n", "c"]
    assert delays == [0.005, 0.005]


@pytest.mark.asyncio
async def test_smooth_stream_stops_when_aborted():
    abort_event = asyncio.Event()
    received: list[str] = []

    async for chunk in smooth_stream(["1\n2\n3\n"], delay_ms=0, abort_event=abort_event):
        received.append(chunk)
        abort_event.set()

    assert received == ["1\n"]
