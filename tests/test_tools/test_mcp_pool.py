import asyncio
from typing import Any

import pytest
from mcp.types import CallToolResult, TextContent
from mcp.types import Tool as RemoteTool

from mcp_chat.exceptions import AbortedError, DescriptorError, ToolProviderError
from mcp_chat.models import ToolDescriptor
from mcp_chat.tools.mcp import McpTool, ToolProviderPool, parse_descriptors


class FakeConnection:
    """In-memory tool provider; behaviour is chosen by the descriptor url."""

    def __init__(self, descriptor: ToolDescriptor, tools: list[str] | None = None):
        self.descriptor = descriptor
        self.tools: list[Any] = []
        self._tool_names = tools or ["search"]
        self.open_calls = 0
        self.close_calls = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def open(self, timeout: float) -> None:
        self.open_calls += 1
        if "down" in self.descriptor.url:
            raise ToolProviderError(self.descriptor.label, "connection refused")
        if "hang" in self.descriptor.url:
            await asyncio.sleep(30)
        self.tools = [
            RemoteTool(name=name, description=f"{name} tool", inputSchema={"type": "object", "properties": {}})
            for name in self._tool_names
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        self.calls.append((name, arguments))
        return CallToolResult(content=[TextContent(type="text", text=f"{name}:{arguments}")], isError=False)

    async def close(self) -> None:
        self.close_calls += 1


class Recorder:
    def __init__(self):
        self.connections: list[FakeConnection] = []

    def __call__(self, descriptor: ToolDescriptor) -> FakeConnection:
        connection = FakeConnection(descriptor)
        self.connections.append(connection)
        return connection


def _descriptor(name: str, url: str) -> dict[str, Any]:
    return {"name": name, "type": "sse", "url": url}


@pytest.mark.asyncio
async def test_unreachable_provider_is_dropped():
    recorder = Recorder()
    pool = ToolProviderPool(connector=recorder)

    lease = await pool.acquire([
        _descriptor("alpha", "http://alpha/sse"),
        _descriptor("broken", "http://down/sse"),
        _descriptor("gamma", "http://gamma/sse"),
    ])

    assert lease.tools.list_tools() == ["search", "gamma_search"]
    await lease.release()
    assert [c.close_calls for c in recorder.connections] == [1, 1, 1]


@pytest.mark.asyncio
async def test_all_providers_down_gives_empty_tool_set():
    recorder = Recorder()
    pool = ToolProviderPool(connector=recorder)

    async with await pool.acquire([_descriptor("a", "http://down/a")]) as lease:
        assert len(lease.tools) == 0

    assert lease.released is True
    assert recorder.connections[0].close_calls == 1


@pytest.mark.asyncio
async def test_no_descriptors_gives_empty_lease():
    pool = ToolProviderPool(connector=Recorder())

    lease = await pool.acquire([])

    assert len(lease.tools) == 0
    await lease.release()


@pytest.mark.asyncio
async def test_release_is_idempotent():
    recorder = Recorder()
    pool = ToolProviderPool(connector=recorder)
    lease = await pool.acquire([_descriptor("a", "http://a/sse")])

    await lease.release()
    await lease.release()

    assert recorder.connections[0].close_calls == 1


@pytest.mark.asyncio
async def test_abort_while_connecting_releases_every_connection_once():
    recorder = Recorder()
    pool = ToolProviderPool(connector=recorder)
    abort_event = asyncio.Event()

    task = asyncio.create_task(pool.acquire(
        [_descriptor("fast", "http://fast/sse"), _descriptor("slow", "http://hang/sse")],
        abort_event,
    ))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(AbortedError):
        await task
    assert [c.close_calls for c in recorder.connections] == [1, 1]


@pytest.mark.asyncio
async def test_already_aborted_never_connects():
    recorder = Recorder()
    pool = ToolProviderPool(connector=recorder)
    abort_event = asyncio.Event()
    abort_event.set()

    with pytest.raises(AbortedError):
        await pool.acquire([_descriptor("a", "http://a/sse")], abort_event)

    assert recorder.connections[0].open_calls == 0
    assert recorder.connections[0].close_calls == 1


@pytest.mark.asyncio
async def test_malformed_descriptor_list_raises():
    pool = ToolProviderPool(connector=Recorder())

    with pytest.raises(DescriptorError):
        await pool.acquire("http://a/sse")
    with pytest.raises(DescriptorError, match="#1"):
        await pool.acquire([_descriptor("a", "http://a/sse"), {"type": "sse"}])


def test_parse_descriptors_accepts_stdio_and_http():
    parsed = parse_descriptors([
        {"type": "stdio", "command": "uvx", "args": ["mcp-server-time"]},
        {"type": "http", "url": "http://h/mcp", "headers": {"Authorization": "Bearer t"}},
    ])

    assert parsed[0].server_ref == "uvx mcp-server-time"
    assert parsed[1].headers == {"Authorization": "Bearer t"}
    with pytest.raises(DescriptorError):
        parse_descriptors([{"type": "stdio"}])


@pytest.mark.asyncio
async def test_extra_descriptors_beyond_limit_are_ignored():
    recorder = Recorder()
    pool = ToolProviderPool(max_servers=2, connector=recorder)

    lease = await pool.acquire([_descriptor(str(i), f"http://s{i}/sse") for i in range(4)])

    assert len(recorder.connections) == 2
    await lease.release()


@pytest.mark.asyncio
async def test_lease_tools_call_through_to_provider():
    recorder = Recorder()
    pool = ToolProviderPool(connector=recorder)
    lease = await pool.acquire([_descriptor("a", "http://a/sse")])

    result = await lease.tools.execute("search", {"q": "cats"}, abort_event=asyncio.Event())

    assert result.success is True
    assert recorder.connections[0].calls == [("search", {"q": "cats"})]
    await lease.release()


@pytest.mark.asyncio
async def test_remote_error_result_is_tool_failure():
    class ErrorConnection(FakeConnection):
        async def call_tool(self, name, arguments):
            return CallToolResult(content=[TextContent(type="text", text="quota exceeded")], isError=True)

    connection = ErrorConnection(ToolDescriptor(url="http://a/sse"))
    tool = McpTool(connection, remote_name="search")

    result = await tool.execute(_abort_event=None)

    assert result.success is False
    assert result.output == "Error: quota exceeded"
