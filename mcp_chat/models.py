"""Conversation data model shared by server and client."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from mcp_chat.ids import generate_id

Role = Literal["user", "assistant", "tool"]
EventType = Literal[
    "step-start",
    "text-delta",
    "tool-call",
    "tool-result",
    "step-finish",
    "finish",
    "error",
]


def utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class TextPart(_WireModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolInvocationPart(_WireModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(_WireModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str = ""
    result: Any = None
    is_error: bool = False


Part = Annotated[
    Union[TextPart, ToolInvocationPart, ToolResultPart],
    Field(discriminator="type"),
]


class Turn(_WireModel):
    """One role-tagged, ordered set of content parts."""

    id: str = Field(default_factory=generate_id)
    role: Role
    content: str = ""
    parts: list[Part] = Field(default_factory=list)
    created_at: str | None = None

    @model_validator(mode="after")
    def _sync_content_and_parts(self) -> "Turn":
        if not self.parts and self.content:
            self.parts = [TextPart(text=self.content)]
        elif self.parts and not self.content:
            self.content = self.text()
        return self

    def text(self) -> str:
        """Concatenated text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_invocations(self) -> list[ToolInvocationPart]:
        return [part for part in self.parts if isinstance(part, ToolInvocationPart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]


class ToolDescriptor(_WireModel):
    """A remote tool provider the caller wants available for one request."""

    name: str = ""
    type: Literal["sse", "http", "stdio"] = "sse"
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_endpoint(self) -> "ToolDescriptor":
        if self.type == "stdio":
            if not self.command.strip():
                raise ValueError("stdio tool provider requires a command")
        elif not self.url.strip():
            raise ValueError(f"{self.type} tool provider requires a url")
        return self

    @property
    def server_ref(self) -> str:
        if self.type == "stdio":
            return " ".join([self.command, *self.args])
        return self.url

    @property
    def label(self) -> str:
        return self.name or self.server_ref


class ChatRequest(_WireModel):
    """Body of a submit request."""

    messages: list[Turn]
    selected_model: str = ""
    mcp_servers: list[ToolDescriptor] = Field(default_factory=list)
    chat_id: str
    user_id: str = ""


class SaveMessagesRequest(_WireModel):
    """Body of a persistence write."""

    messages: list[Turn]
    chat_id: str
    user_id: str = ""


class StoredMessage(_WireModel):
    """A message record as the chat store keeps it."""

    id: str
    chat_id: str
    role: Role
    content: str = ""
    parts: list[dict[str, Any]] = Field(default_factory=list)
    created_at: str = Field(default_factory=utcnow_iso)


class ChatData(_WireModel):
    """History payload returned by the history read."""

    id: str
    title: str = ""
    messages: list[StoredMessage] = Field(default_factory=list)
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)

    @classmethod
    def empty(cls, chat_id: str) -> "ChatData":
        return cls(id=chat_id)


class ChatSummary(_WireModel):
    """Sidebar listing entry."""

    id: str
    title: str
    created_at: str
    updated_at: str


@dataclass
class StreamEvent:
    """One event of a streamed model response."""

    type: EventType
    text: str = ""
    message_id: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    is_error: bool = False
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    is_continued: bool = False
    error: str = ""
