"""Abort-event helpers shared by the tool pool, the tool registry and the engine."""

import asyncio
from typing import Any, Awaitable, TypeVar

from mcp_chat.exceptions import AbortedError

T = TypeVar("T")


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


def raise_if_aborted(abort_event: asyncio.Event | None) -> None:
    if abort_event is not None and abort_event.is_set():
        raise AbortedError()


async def run_abortable(
    awaitable: Awaitable[T],
    abort_event: asyncio.Event | None,
    timeout: float | None = None,
) -> T:
    """Await ``awaitable`` until it completes, the abort event fires, or the timeout elapses.

    Raises:
        AbortedError: the abort event was set first; the work is cancelled.
        asyncio.TimeoutError: the timeout elapsed first; the work is cancelled.
    """
    work = asyncio.ensure_future(awaitable)
    if abort_event is not None and abort_event.is_set():
        await cancel_task(work)
        raise AbortedError()

    abort_wait: asyncio.Task[bool] | None = None
    waiters: set[asyncio.Future[Any]] = {work}
    if abort_event is not None:
        abort_wait = asyncio.create_task(abort_event.wait())
        waiters.add(abort_wait)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work in done:
            return work.result()
        await cancel_task(work)
        if abort_wait is not None and abort_wait in done:
            raise AbortedError()
        raise asyncio.TimeoutError()
    except asyncio.CancelledError:
        await cancel_task(work)
        raise
    finally:
        await cancel_task(abort_wait)
