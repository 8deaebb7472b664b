"""Line-oriented data stream protocol between server and client.

Each line is ``<code>:<json>\\n``:

====  ===========  ==============================================
code  event        payload
====  ===========  ==============================================
f     step-start   ``{"messageId"}``
0     text-delta   JSON string
9     tool-call    ``{"toolCallId", "toolName", "args"}``
a     tool-result  ``{"toolCallId", "toolName", "result", "isError"}``
e     step-finish  ``{"finishReason", "usage", "isContinued"}``
d     finish       ``{"finishReason", "usage"}``
3     error        JSON string
====  ===========  ==============================================
"""

import json
from typing import Any

from mcp_chat.exceptions import ProtocolError
from mcp_chat.models import StreamEvent

CONTENT_TYPE = "text/plain; charset=utf-8"
STREAM_HEADERS = {
    "Content-Type": CONTENT_TYPE,
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "x-vercel-ai-data-stream": "v1",
}

_CODES = {
    "step-start": "f",
    "text-delta": "0",
    "tool-call": "9",
    "tool-result": "a",
    "step-finish": "e",
    "finish": "d",
    "error": "3",
}
_TYPES = {code: kind for kind, code in _CODES.items()}


def _usage(usage: dict[str, int]) -> dict[str, int]:
    return {
        "promptTokens": int(usage.get("prompt_tokens", 0)),
        "completionTokens": int(usage.get("completion_tokens", 0)),
    }


def _payload(event: StreamEvent) -> Any:
    if event.type in ("text-delta",):
        return event.text
    if event.type == "error":
        return event.error
    if event.type == "step-start":
        return {"messageId": event.message_id}
    if event.type == "tool-call":
        return {"toolCallId": event.tool_call_id, "toolName": event.tool_name, "args": event.args}
    if event.type == "tool-result":
        return {
            "toolCallId": event.tool_call_id,
            "toolName": event.tool_name,
            "result": event.result,
            "isError": event.is_error,
        }
    if event.type == "step-finish":
        return {
            "finishReason": event.finish_reason,
            "usage": _usage(event.usage),
            "isContinued": event.is_continued,
        }
    return {"finishReason": event.finish_reason, "usage": _usage(event.usage)}


def encode_event(event: StreamEvent) -> bytes:
    """Encode one event as a protocol line."""
    code = _CODES[event.type]
    body = json.dumps(_payload(event), ensure_ascii=False, default=str)
    return f"{code}:{body}\n".encode("utf-8")


def decode_line(line: str) -> StreamEvent:
    """Parse one protocol line back into an event.

    Raises:
        ProtocolError: unknown code or malformed JSON
    """
    code, sep, body = line.rstrip("\r\n").partition(":")
    if not sep or code not in _TYPES:
        raise ProtocolError(f"Unknown stream line: {line[:80]!r}")
    try:
        value = json.loads(body)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed stream payload for '{code}': {e}") from e

    kind = _TYPES[code]
    if kind == "text-delta":
        return StreamEvent(type=kind, text=str(value))
    if kind == "error":
        return StreamEvent(type=kind, error=str(value or ""))
    if not isinstance(value, dict):
        raise ProtocolError(f"Expected an object for '{code}'")

    usage = value.get("usage") or {}
    usage_dict = {
        "prompt_tokens": int(usage.get("promptTokens", 0)),
        "completion_tokens": int(usage.get("completionTokens", 0)),
    }
    if kind == "step-start":
        return StreamEvent(type=kind, message_id=str(value.get("messageId", "")))
    if kind == "tool-call":
        return StreamEvent(
            type=kind,
            tool_call_id=str(value.get("toolCallId", "")),
            tool_name=str(value.get("toolName", "")),
            args=dict(value.get("args") or {}),
        )
    if kind == "tool-result":
        return StreamEvent(
            type=kind,
            tool_call_id=str(value.get("toolCallId", "")),
            tool_name=str(value.get("toolName", "")),
            result=value.get("result"),
            is_error=bool(value.get("isError", False)),
        )
    if kind == "step-finish":
        return StreamEvent(
            type=kind,
            finish_reason=str(value.get("finishReason", "")),
            usage=usage_dict,
            is_continued=bool(value.get("isContinued", False)),
        )
    return StreamEvent(type=kind, finish_reason=str(value.get("finishReason", "")), usage=usage_dict)
