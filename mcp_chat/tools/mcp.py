"""Request-scoped MCP tool providers.

Every chat request brings its own list of tool provider descriptors. The pool
opens one MCP client session per descriptor, exposes the remote tools through
a ``ToolRegistry`` and closes every session when the request ends::

    async with await pool.acquire(request.mcp_servers, abort_event) as lease:
        ...  # lease.tools is a ToolRegistry

Connections are never shared between requests.
"""

import asyncio
import json
import os
import re
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Callable, Protocol, Sequence

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult, Implementation
from pydantic import ValidationError

from mcp_chat.abort import cancel_task, run_abortable
from mcp_chat.config import get_config
from mcp_chat.exceptions import AbortedError, DescriptorError, ToolProviderError
from mcp_chat.logging import get_logger
from mcp_chat.models import ToolDescriptor
from mcp_chat.tools.registry import Tool, ToolRegistry, ToolResult

log = get_logger(__name__)

_CLIENT_INFO = Implementation(name="mcp-chat", version="0.1.0")
_TOOL_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")
_CLOSE_TIMEOUT = 5.0


class ProviderConnection(Protocol):
    """What the pool needs from one open tool provider."""

    descriptor: ToolDescriptor
    tools: list[Any]

    async def open(self, timeout: float) -> None: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult: ...

    async def close(self) -> None: ...


def parse_descriptors(raw: Any) -> list[ToolDescriptor]:
    """Validate the caller-supplied descriptor list.

    Raises:
        DescriptorError: the list or one of its entries is malformed
    """
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise DescriptorError("Tool provider descriptors must be a list")

    descriptors: list[ToolDescriptor] = []
    for index, item in enumerate(raw):
        if isinstance(item, ToolDescriptor):
            descriptors.append(item)
            continue
        if not isinstance(item, dict):
            raise DescriptorError(f"Tool provider descriptor #{index} must be an object")
        try:
            descriptors.append(ToolDescriptor.model_validate(item))
        except ValidationError as e:
            reason = e.errors()[0].get("msg", "invalid") if e.errors() else "invalid"
            raise DescriptorError(f"Tool provider descriptor #{index} is invalid: {reason}") from e
    return descriptors


def _tool_name(value: str) -> str:
    return _TOOL_NAME_RE.sub("_", value).strip("_")[:64] or "tool"


@asynccontextmanager
async def _open_transport(descriptor: ToolDescriptor) -> AsyncIterator[tuple[Any, Any]]:
    """Yield the (read, write) stream pair for the descriptor's transport."""
    if descriptor.type == "stdio":
        params = StdioServerParameters(
            command=descriptor.command,
            args=list(descriptor.args),
            env={**os.environ, **descriptor.env},
        )
        async with stdio_client(params) as (read, write):
            yield read, write
    elif descriptor.type == "http":
        async with streamablehttp_client(descriptor.url, headers=descriptor.headers or None) as (
            read,
            write,
            _,
        ):
            yield read, write
    else:
        async with sse_client(descriptor.url, headers=descriptor.headers or None) as (read, write):
            yield read, write


class McpConnection:
    """One MCP client session, owned by a dedicated task.

    The transport and session contexts are entered and exited inside the same
    task, which the MCP client's task groups require.
    """

    def __init__(self, descriptor: ToolDescriptor):
        self.descriptor = descriptor
        self.session: ClientSession | None = None
        self.tools: list[Any] = []
        self._ready: asyncio.Future[None] | None = None
        self._close_requested = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    async def _run(self) -> None:
        assert self._ready is not None
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(_open_transport(self.descriptor))
                session = await stack.enter_async_context(
                    ClientSession(read, write, client_info=_CLIENT_INFO)
                )
                await session.initialize()
                listed = await session.list_tools()
                self.session = session
                self.tools = list(listed.tools)
                self._ready.set_result(None)
                await self._close_requested.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(ToolProviderError(self.descriptor.label, str(e) or type(e).__name__))
            else:
                log.warning("Tool provider closed with error", server=self.descriptor.label, error=str(e))
        finally:
            self.session = None
            if not self._ready.done():
                self._ready.set_exception(ToolProviderError(self.descriptor.label, "connection closed"))

    async def open(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp:{self.descriptor.label}")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.TimeoutError:
            raise ToolProviderError(self.descriptor.label, f"connect timed out after {timeout}s")

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        if self.session is None:
            raise ToolProviderError(self.descriptor.label, "not connected")
        return await self.session.call_tool(name, arguments)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_requested.set()
        if self._task is None:
            return
        if self._ready is not None and not self._ready.done():
            await cancel_task(self._task)
        else:
            done, _ = await asyncio.wait({self._task}, timeout=_CLOSE_TIMEOUT)
            if not done:
                await cancel_task(self._task)
        if self._ready is not None and self._ready.done() and not self._ready.cancelled():
            self._ready.exception()


def _flatten_result(result: CallToolResult) -> ToolResult:
    """Turn an MCP call result into text the model can read."""
    chunks: list[str] = []
    for item in result.content or []:
        if getattr(item, "type", "") == "text":
            chunks.append(str(getattr(item, "text", "")))
        else:
            chunks.append(json.dumps(item.model_dump(mode="json"), ensure_ascii=False))
    text = "\n".join(chunks)
    if not text and getattr(result, "structuredContent", None):
        text = json.dumps(result.structuredContent, ensure_ascii=False)
    if result.isError:
        return ToolResult(success=False, content=text, error=text or "Tool reported an error")
    return ToolResult(success=True, content=text)


class McpTool(Tool):
    """A remote MCP tool callable through the registry."""

    def __init__(
        self,
        connection: ProviderConnection,
        remote_name: str,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        name: str | None = None,
        timeout_seconds: float = 60.0,
    ):
        self.connection = connection
        self.remote_name = remote_name
        self.name = name or _tool_name(remote_name)
        self.description = description
        self.parameters = input_schema or {"type": "object", "properties": {}}
        self.timeout_seconds = timeout_seconds

    async def execute(self, **kwargs: Any) -> ToolResult:
        kwargs.pop("_abort_event", None)
        result = await self.connection.call_tool(self.remote_name, kwargs)
        return _flatten_result(result)


class ToolLease:
    """Tools of one request plus the connections behind them."""

    def __init__(self, connections: Sequence[ProviderConnection]):
        self.connections = list(connections)
        self.tools = ToolRegistry()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        """Close every opened connection. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        for connection in reversed(self.connections):
            try:
                await connection.close()
            except Exception as e:
                log.warning(
                    "Tool provider close failed",
                    server=connection.descriptor.label,
                    error=str(e),
                )
        if self.connections:
            log.info("Released tool providers", count=len(self.connections))

    async def __aenter__(self) -> "ToolLease":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()


class ToolProviderPool:
    """Opens the tool providers of one request."""

    def __init__(
        self,
        max_servers: int | None = None,
        connect_timeout: float | None = None,
        call_timeout: float | None = None,
        connector: Callable[[ToolDescriptor], ProviderConnection] | None = None,
    ):
        cfg = get_config().mcp
        self.max_servers = max_servers if max_servers is not None else cfg.max_servers
        self.connect_timeout = connect_timeout if connect_timeout is not None else cfg.connect_timeout
        self.call_timeout = call_timeout if call_timeout is not None else cfg.call_timeout
        self._connector = connector or McpConnection

    async def _open(self, connection: ProviderConnection) -> bool:
        try:
            await connection.open(self.connect_timeout)
            return True
        except ToolProviderError as e:
            log.warning("Tool provider connection failed", server=connection.descriptor.label, error=str(e))
        except Exception as e:
            log.warning(
                "Tool provider connection failed",
                server=connection.descriptor.label,
                error=str(e) or type(e).__name__,
            )
        return False

    def _register_tools(self, lease: ToolLease, connected: list[ProviderConnection]) -> None:
        for connection in connected:
            prefix = _tool_name(connection.descriptor.name or connection.descriptor.server_ref)
            for remote in connection.tools:
                name = _tool_name(remote.name)
                if lease.tools.has_tool(name):
                    name = _tool_name(f"{prefix}_{remote.name}")
                if lease.tools.has_tool(name):
                    log.warning("Duplicate tool skipped", tool=remote.name, server=connection.descriptor.label)
                    continue
                lease.tools.register(
                    McpTool(
                        connection,
                        remote_name=remote.name,
                        description=remote.description or "",
                        input_schema=remote.inputSchema,
                        name=name,
                        timeout_seconds=self.call_timeout,
                    )
                )

    async def acquire(
        self,
        descriptors: Any,
        abort_event: asyncio.Event | None = None,
    ) -> ToolLease:
        """Connect every descriptor concurrently and collect their tools.

        Unreachable providers are dropped with a warning. An abort releases
        everything opened so far and raises ``AbortedError``.

        Raises:
            DescriptorError: the descriptor list is malformed
            AbortedError: the abort event fired before the tools were ready
        """
        parsed = parse_descriptors(descriptors)
        if len(parsed) > self.max_servers:
            log.warning(
                "Too many tool providers, extra ones ignored",
                requested=len(parsed),
                limit=self.max_servers,
            )
            parsed = parsed[: self.max_servers]

        lease = ToolLease([self._connector(descriptor) for descriptor in parsed])
        if abort_event is not None and abort_event.is_set():
            await lease.release()
            raise AbortedError()
        if not lease.connections:
            return lease

        try:
            opened = await run_abortable(
                asyncio.gather(*(self._open(connection) for connection in lease.connections)),
                abort_event,
            )
        except BaseException:
            await lease.release()
            raise

        connected = [c for c, ok in zip(lease.connections, opened) if ok]
        self._register_tools(lease, connected)
        log.info(
            "Tool providers ready",
            requested=len(lease.connections),
            connected=len(connected),
            tools=len(lease.tools),
        )
        return lease
