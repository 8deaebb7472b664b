"""mcp-chat - chat turns against a language model with per-request MCP tools."""

__version__ = "0.1.0"

from mcp_chat.config import Config

__all__ = ["Config", "__version__"]
