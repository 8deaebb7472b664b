"""Relay engine events to the client and finalize the turn exactly once."""

from typing import Awaitable, Callable

from mcp_chat.engine import EngineRun, LoopState
from mcp_chat.logging import get_logger
from mcp_chat.models import Turn
from mcp_chat.protocol import encode_event
from mcp_chat.tools.mcp import ToolLease

log = get_logger(__name__)

FinishCallback = Callable[[list[Turn]], Awaitable[bool]]
Writer = Callable[[bytes], Awaitable[None]]


def unsaved_request_turns(history: list[Turn]) -> list[Turn]:
    """The trailing user turns of a request, i.e. what the client just added."""
    pending: list[Turn] = []
    for turn in reversed(history):
        if turn.role != "user":
            break
        pending.append(turn)
    pending.reverse()
    return pending


class StreamBridge:
    """Pipes one EngineRun into an outbound byte stream."""

    def __init__(
        self,
        run: EngineRun,
        lease: ToolLease | None,
        on_finish: FinishCallback,
        request_turns: list[Turn] | None = None,
    ):
        self.run = run
        self.lease = lease
        self.on_finish = on_finish
        self.request_turns = list(request_turns or [])
        self.finalize_calls = 0
        self.disconnected = False

    async def pipe(self, write: Writer) -> None:
        """Relay every event, then finalize and release the tool providers.

        Returns once the turn has been handed to the finish callback, so the
        caller can end the transport stream afterwards.
        """
        try:
            await self._relay(write)
        finally:
            try:
                await self._finalize()
            finally:
                if self.lease is not None:
                    await self.lease.release()

    async def _relay(self, write: Writer) -> None:
        stream = self.run.__aiter__()
        try:
            async for event in stream:
                try:
                    await write(encode_event(event))
                except ConnectionError as e:
                    self.disconnected = True
                    log.info("Client disconnected mid-stream", error=str(e))
                    if self.run.abort_event is not None:
                        self.run.abort_event.set()
                    break
        finally:
            await stream.aclose()

    def _should_finalize(self) -> bool:
        if self.run.state in (LoopState.DONE, LoopState.TRUNCATED):
            return True
        return self.run.has_assistant_content

    async def _finalize(self) -> None:
        if self.finalize_calls:
            return
        if not self._should_finalize():
            log.info("Skipping persistence, no assistant content", state=self.run.state.value)
            return
        self.finalize_calls += 1
        turns = [*self.request_turns, *self.run.response_turns]
        try:
            saved = await self.on_finish(turns)
        except Exception as e:
            log.error("Finalize failed", error=str(e))
            return
        if not saved:
            log.warning("Turn was not persisted", state=self.run.state.value)
