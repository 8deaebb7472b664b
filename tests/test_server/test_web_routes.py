from pathlib import Path
from typing import Any

import httpx
import pytest
from aiohttp.test_utils import TestClient, TestServer
from mcp.types import CallToolResult, TextContent
from mcp.types import Tool as RemoteTool

from mcp_chat.client.api import ChatApiClient
from mcp_chat.client.cache import QueryCache
from mcp_chat.client.session import ConversationSession
from mcp_chat.config import get_config
from mcp_chat.engine import CompletionEngine
from mcp_chat.exceptions import ToolProviderError
from mcp_chat.llm import LLMProvider, LLMResponse, ToolCall
from mcp_chat.models import ToolDescriptor
from mcp_chat.persistence import PersistenceSync, RemotePersistence
from mcp_chat.protocol import decode_line
from mcp_chat.store import ChatStore
from mcp_chat.tools.mcp import ToolProviderPool
from mcp_chat.web_server import ChatServer


class ScriptedProvider(LLMProvider):
    def __init__(self, responses):
        self.responses = list(responses)
        self.models: list[str | None] = []
        self.tool_names: list[list[str]] = []

    async def complete(self, messages, tools=None, model=None, temperature=None, max_tokens=None):
        self.models.append(model)
        self.tool_names.append([tool.name for tool in tools or []])
        return self.responses.pop(0)


class FakeConnection:
    instances: list["FakeConnection"] = []

    def __init__(self, descriptor: ToolDescriptor):
        self.descriptor = descriptor
        self.tools: list[Any] = []
        self.close_calls = 0
        FakeConnection.instances.append(self)

    async def open(self, timeout: float) -> None:
        if "down" in self.descriptor.url:
            raise ToolProviderError(self.descriptor.label, "refused")
        self.tools = [RemoteTool(name="weather", description="Weather", inputSchema={"type": "object"})]

    async def call_tool(self, name, arguments):
        return CallToolResult(content=[TextContent(type="text", text="sunny")], isError=False)

    async def close(self) -> None:
        self.close_calls += 1


def _server(tmp_path: Path, responses) -> tuple[ChatServer, ScriptedProvider]:
    provider = ScriptedProvider(responses)
    FakeConnection.instances = []
    server = ChatServer(
        config=get_config(),
        engine=CompletionEngine(provider=provider, smooth_delay_ms=0),
        pool=ToolProviderPool(connector=FakeConnection),
        store=ChatStore(tmp_path / "chats.db"),
    )
    return server, provider


def _user_message(text: str, message_id: str = "u1") -> dict[str, Any]:
    return {"id": message_id, "role": "user", "content": text, "parts": [{"type": "text", "text": text}]}


@pytest.mark.asyncio
async def test_history_of_unknown_chat_is_404(tmp_path: Path):
    server, _ = _server(tmp_path, [])
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.get("/api/chats/nope", headers={"x-user-id": "alice"})
        assert resp.status == 404
        assert await resp.json() == {"error": "Chat not found"}

        resp = await client.get("/api/chats/nope")
        assert resp.status == 400


@pytest.mark.asyncio
async def test_chat_streams_and_persists_the_turn(tmp_path: Path):
    server, provider = _server(tmp_path, [LLMResponse(content="Hello!\nNice to meet you.")])
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post(
            "/api/chat",
            json={"messages": [_user_message("hello")], "chatId": "chat-x", "userId": "alice"},
        )
        assert resp.status == 200
        assert resp.headers["x-vercel-ai-data-stream"] == "v1"
        body = await resp.text()

        events = [decode_line(line) for line in body.splitlines() if line]
        assert [e.type for e in events][0] == "step-start"
        assert events[-1].type == "finish"
        assert "".join(e.text for e in events if e.type == "text-delta") == "Hello!\nNice to meet you."

        resp = await client.get("/api/chats/chat-x", headers={"x-user-id": "alice"})
        data = await resp.json()
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
        assert data["messages"][1]["content"] == "Hello!\nNice to meet you."
        assert provider.models == [get_config().model.model]


@pytest.mark.asyncio
async def test_chat_proceeds_with_reachable_tool_providers(tmp_path: Path):
    server, provider = _server(tmp_path, [
        LLMResponse(content="", tool_calls=[ToolCall(id="c1", name="weather", arguments={})]),
        LLMResponse(content="It is sunny."),
    ])
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/api/chat", json={
            "messages": [_user_message("weather?")],
            "chatId": "chat-w",
            "userId": "alice",
            "mcpServers": [
                {"name": "ok", "type": "sse", "url": "http://ok/sse"},
                {"name": "dead", "type": "sse", "url": "http://down/sse"},
            ],
        })
        body = await resp.text()

    assert resp.status == 200
    assert 'a:{"toolCallId": "c1", "toolName": "weather", "result": "sunny", "isError": false}' in body
    assert provider.tool_names[0] == ["weather"]
    assert [c.close_calls for c in FakeConnection.instances] == [1, 1]


@pytest.mark.asyncio
async def test_chat_rejects_bad_requests(tmp_path: Path):
    server, _ = _server(tmp_path, [])
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/api/chat", data="not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400

        resp = await client.post("/api/chat", json={"messages": [], "chatId": "c"})
        assert resp.status == 400

        resp = await client.post("/api/chat", json={
            "messages": [_user_message("hi")],
            "chatId": "c",
            "mcpServers": [{"type": "sse"}],
        })
        assert resp.status == 400


@pytest.mark.asyncio
async def test_save_messages_is_idempotent(tmp_path: Path):
    server, _ = _server(tmp_path, [])
    payload = {
        "chatId": "chat-s",
        "userId": "alice",
        "messages": [
            _user_message("hi"),
            {"id": "a1", "role": "assistant", "content": "hello"},
        ],
    }
    async with TestClient(TestServer(server.create_app())) as client:
        for _ in range(2):
            resp = await client.post("/api/chat/messages", json=payload)
            assert await resp.json() == {"success": True}

        resp = await client.get("/api/chats/chat-s", headers={"x-user-id": "alice"})
        data = await resp.json()
        assert [m["id"] for m in data["messages"]] == ["u1", "a1"]

        resp = await client.get("/api/chats", headers={"x-user-id": "alice"})
        assert [c["id"] for c in await resp.json()] == ["chat-s"]

        resp = await client.delete("/api/chats/chat-s", headers={"x-user-id": "alice"})
        assert await resp.json() == {"success": True}
        resp = await client.delete("/api/chats/chat-s", headers={"x-user-id": "alice"})
        assert resp.status == 404


@pytest.mark.asyncio
async def test_models_route_lists_default_first(tmp_path: Path):
    server, _ = _server(tmp_path, [])
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.get("/api/models")
        data = await resp.json()

    assert data["default"] == get_config().model.model
    assert data["models"][0] == data["default"]


@pytest.mark.asyncio
async def test_new_conversation_end_to_end(tmp_path: Path):
    server, _ = _server(tmp_path, [LLMResponse(content="Hi! How can I help?")])
    async with TestClient(TestServer(server.create_app())) as client:
        base_url = str(client.make_url(""))
        async with httpx.AsyncClient(base_url=base_url) as http:
            api = ChatApiClient(client=http)
            routes: list[str] = []
            session = ConversationSession(user_id="alice", api=api, cache=QueryCache(), navigate=routes.append)

            await session.mount(None)
            chat_id = session.chat_id
            assert routes == []

            await session.submit("hello")
            assert routes == [f"/chat/{chat_id}"]
            await session.wait()
            assert [t.role for t in session.messages] == ["user", "assistant"]
            assert session.messages[-1].text() == "Hi! How can I help?"

            chat = await api.fetch_chat(chat_id, "alice")
            assert [m.role for m in chat.messages] == ["user", "assistant"]
            assert session.chat_id == chat_id

            empty = await api.fetch_chat("never-used", "alice")
            assert empty.id == "never-used"
            assert empty.messages == []
            await session.unmount()


@pytest.mark.asyncio
async def test_persistence_url_posts_finished_turns_remotely(tmp_path: Path, isolated_config):
    isolated_config.storage.persistence_url = "http://store.internal:23180"

    server = ChatServer(
        config=isolated_config,
        engine=CompletionEngine(provider=ScriptedProvider([])),
        pool=ToolProviderPool(connector=FakeConnection),
        store=ChatStore(tmp_path / "chats.db"),
    )

    assert isinstance(server.finalizer, RemotePersistence)
    assert server.finalizer.base_url == "http://store.internal:23180"
    assert isinstance(server.persistence, PersistenceSync)
    await server.finalizer.close()


@pytest.mark.asyncio
async def test_save_messages_to_another_users_chat_fails(tmp_path: Path):
    server, _ = _server(tmp_path, [])
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/api/chat/messages", json={
            "chatId": "chat-a",
            "userId": "alice",
            "messages": [_user_message("alice secret")],
        })
        assert await resp.json() == {"success": True}

        resp = await client.post("/api/chat/messages", json={
            "chatId": "chat-a",
            "userId": "mallory",
            "messages": [_user_message("mallory injected", message_id="m1")],
        })
        assert resp.status == 500
        assert await resp.json() == {"error": "Failed to save messages"}

        resp = await client.get("/api/chats/chat-a", headers={"x-user-id": "alice"})
        data = await resp.json()
        assert [m["content"] for m in data["messages"]] == ["alice secret"]
