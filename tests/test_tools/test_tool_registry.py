import asyncio

import pytest

from mcp_chat.exceptions import AbortedError, ToolExecutionError, ToolNotFoundError
from mcp_chat.tools.registry import Tool, ToolRegistry, ToolResult


class EchoTool(Tool):
    name = "echo"
    description = "Echo text"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.seen_abort_events: list[object] = []

    async def execute(self, **kwargs):
        self.seen_abort_events.append(kwargs.pop("_abort_event", None))
        return ToolResult(success=True, content=str(kwargs["text"]))


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenTool(Tool):
    name = "broken"
    description = "Raises"
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs):
        raise RuntimeError("kaboom")


@pytest.mark.asyncio
async def test_execute_passes_arguments_and_abort_event():
    tool = EchoTool()
    registry = ToolRegistry([tool])
    abort_event = asyncio.Event()

    result = await registry.execute("echo", {"text": "hi"}, abort_event=abort_event)

    assert result.success is True
    assert result.output == "hi"
    assert tool.seen_abort_events == [abort_event]


@pytest.mark.asyncio
async def test_missing_required_argument_is_execution_error():
    registry = ToolRegistry([EchoTool()])

    with pytest.raises(ToolExecutionError, match="Missing required argument: text"):
        await registry.execute("echo", {})


@pytest.mark.asyncio
async def test_unknown_tool_raises_not_found():
    registry = ToolRegistry()

    with pytest.raises(ToolNotFoundError):
        await registry.execute("nope", {})


@pytest.mark.asyncio
async def test_timeout_becomes_execution_error():
    registry = ToolRegistry([SlowTool()])

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_tool_exception_becomes_execution_error():
    registry = ToolRegistry([BrokenTool()])

    with pytest.raises(ToolExecutionError, match="kaboom"):
        await registry.execute("broken", {})


@pytest.mark.asyncio
async def test_abort_event_cancels_running_tool():
    tool = CancellableTool()
    registry = ToolRegistry([tool])
    abort_event = asyncio.Event()

    task = asyncio.create_task(registry.execute("cancellable", {}, abort_event=abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(AbortedError):
        await task
    assert tool.cancelled is True


def test_failed_result_always_has_error_text():
    assert ToolResult(success=False).error == "Tool execution failed"
    assert ToolResult(success=False, content="bad input").output == "Error: bad input"


def test_registry_mapping_behaviour():
    registry = ToolRegistry([EchoTool(), SlowTool()])

    assert len(registry) == 2
    assert "echo" in registry
    assert list(registry) == ["echo", "slow"]
    assert [d.name for d in registry.get_definitions()] == ["echo", "slow"]

    registry.unregister("slow")
    assert registry.list_tools() == ["echo"]
