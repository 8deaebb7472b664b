"""Custom exceptions for mcp-chat."""


class McpChatError(Exception):
    """Base exception for mcp-chat."""

    pass


class ConfigurationError(McpChatError):
    """Configuration-related errors."""

    pass


class LLMError(McpChatError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(McpChatError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolProviderError(ToolError):
    """A tool provider could not be reached."""

    def __init__(self, server: str, message: str):
        super().__init__(f"Tool provider '{server}' unavailable: {message}")
        self.server = server


class DescriptorError(ToolError):
    """The tool provider descriptor list is malformed."""

    pass


class TransportError(McpChatError):
    """Network or stream failure between client and server."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(McpChatError):
    """Malformed data stream line."""

    pass


class PersistenceError(McpChatError):
    """Chat storage write failed."""

    pass


class AbortedError(McpChatError):
    """The operation was aborted through its abort event."""

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message)
