"""Chat client: HTTP API, query cache and conversation session."""

from mcp_chat.client.api import ChatApiClient
from mcp_chat.client.cache import QueryCache, chat_key, chats_key
from mcp_chat.client.session import ConversationSession, SessionStatus

__all__ = [
    "ChatApiClient",
    "ConversationSession",
    "QueryCache",
    "SessionStatus",
    "chat_key",
    "chats_key",
]
