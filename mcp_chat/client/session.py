"""Client-side conversation state machine."""

import asyncio
from enum import Enum
from typing import Callable

from mcp_chat.abort import cancel_task
from mcp_chat.client.api import ChatApiClient
from mcp_chat.client.cache import QueryCache, chat_key, chats_key
from mcp_chat.config import get_config
from mcp_chat.exceptions import McpChatError
from mcp_chat.ids import generate_id
from mcp_chat.logging import get_logger
from mcp_chat.models import (
    ChatData,
    ChatRequest,
    StreamEvent,
    TextPart,
    ToolDescriptor,
    ToolInvocationPart,
    ToolResultPart,
    Turn,
    utcnow_iso,
)
from mcp_chat.persistence import to_turns

log = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An error occured, please try again later."
HISTORY_ERROR_MESSAGE = "Failed to load chat history"


class SessionStatus(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    ERROR = "error"


def _default_notify(message: str) -> None:
    log.warning("User notification", message=message)


class ConversationSession:
    """State for one open conversation view.

    At most one streaming request is in flight; a new ``submit`` aborts and
    awaits the previous one first. A conversation opened without a route id
    gets a fresh id at mount time and is navigated to ``/chat/<id>`` on its
    first submit.
    """

    def __init__(
        self,
        user_id: str,
        api: ChatApiClient | None = None,
        cache: QueryCache | None = None,
        navigate: Callable[[str], None] | None = None,
        notify_error: Callable[[str], None] | None = None,
        on_change: Callable[["ConversationSession"], None] | None = None,
        selected_model: str = "",
        mcp_servers: list[ToolDescriptor] | None = None,
        throttle_ms: int | None = None,
        history_stale_seconds: float | None = None,
    ):
        cfg = get_config().client
        self.user_id = user_id
        self.api = api or ChatApiClient()
        self.cache = cache or QueryCache()
        self.navigate = navigate or (lambda route: None)
        self.notify_error = notify_error or _default_notify
        self.on_change = on_change
        self.selected_model = selected_model
        self.mcp_servers = list(mcp_servers or [])
        self.throttle_ms = cfg.throttle_ms if throttle_ms is None else throttle_ms
        self.history_stale_seconds = (
            cfg.history_stale_seconds if history_stale_seconds is None else history_stale_seconds
        )

        self.chat_id = ""
        self.route: str | None = None
        self.messages: list[Turn] = []
        self.status = SessionStatus.IDLE
        self.history_loading = False
        self.mounted = False

        self._task: asyncio.Task[None] | None = None
        self._abort_event: asyncio.Event | None = None
        self._last_change = float("-inf")
        self._pending_change: asyncio.TimerHandle | None = None

    @property
    def is_loading(self) -> bool:
        return self.history_loading or self.status in (SessionStatus.SUBMITTED, SessionStatus.STREAMING)

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def mount(self, route_chat_id: str | None = None) -> None:
        """Open a conversation by route id, or start a new one."""
        self.mounted = True
        if not route_chat_id:
            self.chat_id = generate_id()
            self.route = None
            self.messages = []
            self._changed(force=True)
            return

        self.chat_id = route_chat_id
        self.route = f"/chat/{route_chat_id}"
        self.history_loading = True
        self._changed(force=True)
        try:
            chat = await self.cache.fetch(
                chat_key(route_chat_id, self.user_id),
                lambda: self.api.fetch_chat(route_chat_id, self.user_id),
                stale_after=self.history_stale_seconds,
            )
        except Exception as e:
            log.error("Failed to load chat history", chat_id=route_chat_id, error=str(e))
            self.notify_error(HISTORY_ERROR_MESSAGE)
            chat = ChatData.empty(route_chat_id)
        finally:
            self.history_loading = False

        self._reconcile(to_turns(chat.messages))
        self._changed(force=True)

    def _reconcile(self, fetched: list[Turn]) -> None:
        """Fetched history first, then local turns the server has not seen yet."""
        known = {turn.id for turn in fetched}
        self.messages = [*fetched, *(turn for turn in self.messages if turn.id not in known)]

    async def submit(self, text: str) -> asyncio.Task[None] | None:
        """Send a user message; returns the task consuming the response stream."""
        text = text.strip()
        if not text:
            return None
        await self._abort_in_flight()

        self.messages.append(Turn(role="user", content=text, created_at=utcnow_iso()))
        request = ChatRequest(
            messages=list(self.messages),
            selected_model=self.selected_model,
            mcp_servers=list(self.mcp_servers),
            chat_id=self.chat_id,
            user_id=self.user_id,
        )
        abort_event = asyncio.Event()
        self._abort_event = abort_event
        self.status = SessionStatus.SUBMITTED
        self._changed(force=True)
        self._task = asyncio.create_task(self._consume(request, abort_event))

        if self.route is None:
            self.route = f"/chat/{self.chat_id}"
            self.navigate(self.route)
        return self._task

    async def wait(self) -> None:
        """Wait for the in-flight request, if any, to settle."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def stop(self) -> None:
        """Abort the in-flight request. Not an error."""
        await self._abort_in_flight()
        self.status = SessionStatus.IDLE
        self._changed(force=True)

    async def unmount(self) -> None:
        await self._abort_in_flight()
        if self._pending_change is not None:
            self._pending_change.cancel()
            self._pending_change = None
        self.status = SessionStatus.IDLE
        self.mounted = False

    async def _abort_in_flight(self) -> None:
        if self._abort_event is not None:
            self._abort_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            log.info("Aborting in-flight request", chat_id=self.chat_id)
        await cancel_task(task)
        self._abort_event = None

    async def _consume(self, request: ChatRequest, abort_event: asyncio.Event) -> None:
        completed = False
        try:
            assistant: Turn | None = None
            async for event in self.api.stream_chat(request, abort_event):
                if abort_event.is_set():
                    break
                if self.status is SessionStatus.SUBMITTED:
                    self.status = SessionStatus.STREAMING
                if event.type == "error":
                    self._fail(event.error)
                    return
                assistant = self._apply(event, assistant)
                self._changed()
            completed = not abort_event.is_set()
        except McpChatError as e:
            if abort_event.is_set():
                return
            log.error("Chat request failed", chat_id=request.chat_id, error=str(e))
            self._fail(str(e))
        finally:
            # an assistant turn opened by step-start may never have received content
            self.messages = [turn for turn in self.messages if turn.role == "user" or turn.parts]
            self.status = SessionStatus.IDLE
            self._changed(force=True)

        if completed:
            self._invalidate()

    def _apply(self, event: StreamEvent, assistant: Turn | None) -> Turn | None:
        """Fold one stream event into the local turns; returns the current assistant turn."""
        if event.type == "step-start":
            assistant = Turn(id=event.message_id or generate_id(), role="assistant", parts=[])
            self.messages.append(assistant)
        elif event.type == "text-delta":
            if assistant is None:
                assistant = Turn(role="assistant", parts=[])
                self.messages.append(assistant)
            if not assistant.parts or not isinstance(assistant.parts[-1], TextPart):
                assistant.parts.append(TextPart(text=""))
            assistant.parts[-1].text += event.text
            assistant.content = assistant.text()
        elif event.type == "tool-call":
            if assistant is None:
                assistant = Turn(role="assistant", parts=[])
                self.messages.append(assistant)
            assistant.parts.append(ToolInvocationPart(
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                args=dict(event.args),
            ))
        elif event.type == "tool-result":
            last = self.messages[-1] if self.messages else None
            if last is None or last.role != "tool":
                last = Turn(role="tool", parts=[])
                self.messages.append(last)
            last.parts.append(ToolResultPart(
                tool_call_id=event.tool_call_id,
                tool_name=event.tool_name,
                result=event.result,
                is_error=event.is_error,
            ))
        return assistant

    def _fail(self, message: str) -> None:
        self.status = SessionStatus.ERROR
        self._changed(force=True)
        self.notify_error(message or GENERIC_ERROR_MESSAGE)

    def _invalidate(self) -> None:
        try:
            self.cache.invalidate(chats_key(self.user_id))
            self.cache.invalidate(chat_key(self.chat_id, self.user_id))
        except Exception as e:
            log.warning("Cache invalidation failed", user_id=self.user_id, error=str(e))

    def _changed(self, force: bool = False) -> None:
        if self.on_change is None:
            return
        loop = asyncio.get_running_loop()
        now = loop.time()
        elapsed_ms = (now - self._last_change) * 1000
        if force or self.throttle_ms <= 0 or elapsed_ms >= self.throttle_ms:
            if self._pending_change is not None:
                self._pending_change.cancel()
                self._pending_change = None
            self._emit_change()
            return
        if self._pending_change is None:
            delay = (self.throttle_ms - elapsed_ms) / 1000
            self._pending_change = loop.call_later(delay, self._emit_change)

    def _emit_change(self) -> None:
        self._pending_change = None
        self._last_change = asyncio.get_running_loop().time()
        try:
            self.on_change(self)
        except Exception as e:
            log.warning("Change callback failed", error=str(e))
