"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Iterator

from pydantic import BaseModel, model_validator

from mcp_chat.abort import run_abortable
from mcp_chat.exceptions import AbortedError, ToolExecutionError, ToolNotFoundError
from mcp_chat.llm import ToolDefinition
from mcp_chat.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for lookups."""
    return str(value or "").strip()


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def output(self) -> str:
        """Text fed back to the model."""
        return self.content if self.success else f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 60.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters or {"type": "object", "properties": {}},
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = (self.parameters or {}).get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Name to callable tool mapping for one request."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        name = _normalize_tool_name(tool.name)
        if not name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=name)
        self._tools[name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(_normalize_tool_name(name), None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return _normalize_tool_name(name) in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        key = _normalize_tool_name(name)
        if key not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[key]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has_tool(name)

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            abort_event: Request abort signal; setting it cancels the tool
            timeout_seconds: Override for the tool's own timeout

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
            AbortedError if the abort event fired first
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        timeout = float(timeout_seconds or getattr(tool, "timeout_seconds", 60.0) or 60.0)
        timeout = max(1.0, timeout)

        try:
            log.info("Executing tool", tool=name, args=arguments)
            result = await run_abortable(
                tool.execute(**arguments, _abort_event=abort_event),
                abort_event,
                timeout=timeout,
            )
        except (AbortedError, asyncio.CancelledError):
            log.info("Tool aborted", tool=name)
            raise
        except asyncio.TimeoutError:
            timeout_label = int(timeout) if timeout.is_integer() else timeout
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result
