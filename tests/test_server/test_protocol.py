import pytest

from mcp_chat.exceptions import ProtocolError
from mcp_chat.models import StreamEvent
from mcp_chat.protocol import STREAM_HEADERS, decode_line, encode_event


def test_text_delta_line():
    assert encode_event(StreamEvent(type="text-delta", text='say "hi"\n')) == b'0:"say \\"hi\\"\\n"\n'


def test_finish_line_uses_camel_case_usage():
    line = encode_event(StreamEvent(
        type="finish",
        finish_reason="stop",
        usage={"prompt_tokens": 10, "completion_tokens": 4, "total_tokens": 14},
    ))

    assert line == b'd:{"finishReason": "stop", "usage": {"promptTokens": 10, "completionTokens": 4}}\n'


def test_tool_result_line_decodes_back():
    event = StreamEvent(
        type="tool-result",
        tool_call_id="call_1",
        tool_name="search",
        result={"hits": ["a", "b"]},
        is_error=False,
    )

    decoded = decode_line(encode_event(event).decode("utf-8"))

    assert decoded == event


def test_error_line_decodes_to_error_event():
    decoded = decode_line('3:"model unavailable"')

    assert decoded.type == "error"
    assert decoded.error == "model unavailable"


@pytest.mark.parametrize("line", ["x:{}", "no separator", '9:"not an object"', "0:{broken"])
def test_bad_lines_raise_protocol_error(line):
    with pytest.raises(ProtocolError):
        decode_line(line)


def test_stream_headers_announce_data_stream():
    assert STREAM_HEADERS["x-vercel-ai-data-stream"] == "v1"
    assert STREAM_HEADERS["Content-Type"].startswith("text/plain")
