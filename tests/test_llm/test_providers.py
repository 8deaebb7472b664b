import json

import httpx
import pytest

from mcp_chat.exceptions import LLMAPIError
from mcp_chat.llm import (
    Message,
    OllamaProvider,
    OpenAIProvider,
    ToolCall,
    ToolDefinition,
    create_provider,
    get_provider,
)


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434",
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_defaults_to_openai_endpoint():
    provider = create_provider(provider="openai", model="gpt-4o-mini")

    assert isinstance(provider, OpenAIProvider)
    assert provider.base_url == "https://api.openai.com/v1"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError):
        create_provider(provider="carrier-pigeon")


def test_get_provider_uses_config(isolated_config):
    isolated_config.model.provider = "ollama"
    isolated_config.model.model = "qwen2.5"

    provider = get_provider()

    assert isinstance(provider, OllamaProvider)
    assert provider.model == "qwen2.5"


@pytest.mark.asyncio
async def test_openai_provider_sends_tools_and_parses_tool_calls():
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={
            "model": "gpt-4o-mini",
            "choices": [{
                "finish_reason": "tool_calls",
                "message": {
                    "content": None,
                    "tool_calls": [{
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "search", "arguments": '{"q": "cats"}'},
                    }],
                },
            }],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
        })

    provider = OpenAIProvider(
        api_key="sk-test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    response = await provider.complete(
        [
            Message(role="system", content="sys"),
            Message(role="user", content="find cats"),
            Message(role="assistant", content="", tool_calls=[ToolCall(id="c0", name="search", arguments={})]),
            Message(role="tool", content="none", tool_call_id="c0", tool_name="search"),
        ],
        tools=[ToolDefinition(name="search", description="Search", parameters={"type": "object"})],
        model="gpt-4o",
    )

    body = requests[0]
    assert body["model"] == "gpt-4o"
    assert body["tools"][0]["function"]["name"] == "search"
    assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == "{}"
    assert body["messages"][3] == {"role": "tool", "tool_call_id": "c0", "content": "none"}
    assert response.content == ""
    assert response.tool_calls == [ToolCall(id="call_1", name="search", arguments={"q": "cats"})]
    assert response.usage["total_tokens"] == 15
    await provider.close()


@pytest.mark.asyncio
async def test_openai_provider_error_status_raises_api_error():
    provider = OpenAIProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(429, text="slow down")
        )),
    )

    with pytest.raises(LLMAPIError) as info:
        await provider.complete([Message(role="user", content="hi")])
    assert info.value.status_code == 429
    await provider.close()


@pytest.mark.asyncio
async def test_ollama_provider_parses_native_response():
    provider = OllamaProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={
                "message": {
                    "content": "",
                    "tool_calls": [{"function": {"name": "clock", "arguments": {"tz": "UTC"}}}],
                },
                "prompt_eval_count": 5,
                "eval_count": 2,
                "done_reason": "stop",
            })
        )),
    )

    response = await provider.complete([Message(role="user", content="time?")])

    assert response.tool_calls[0].name == "clock"
    assert response.tool_calls[0].arguments == {"tz": "UTC"}
    assert response.finish_reason == "tool_calls"
    assert response.usage == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}
    await provider.close()
