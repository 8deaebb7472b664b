"""Tools available to the model during a request."""

from mcp_chat.tools.mcp import McpTool, ToolLease, ToolProviderPool, parse_descriptors
from mcp_chat.tools.registry import Tool, ToolRegistry, ToolResult

__all__ = [
    "McpTool",
    "Tool",
    "ToolLease",
    "ToolProviderPool",
    "ToolRegistry",
    "ToolResult",
    "parse_descriptors",
]
