"""
Tests for the API call preview and its configuration.
"""

import io

import pytest
from rich.console import Console

from agent.events import EventType
from agent.preview import PREVIEW_STOP_REASON, PREVIEW_TEXT, PreviewStreamSource, summarize_payload
from agent.stream import RequestPayload
from agent.turn import Turn
from config import AppConfig

PAYLOAD = {
    "model": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
    "system": "S" * 150,
    "messages": [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": [
            {"type": "thinking", "thinking": "abc", "signature": "s"},
            {"type": "text", "text": "hi!"},
            {"type": "tool_use", "id": "c1", "name": "read_file", "input": {}},
        ]},
        {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "c1", "content": "x"},
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": ""}},
        ]},
    ],
    "tools": [{"name": "read_file"}, {"name": "write_file"}],
}


def test_summary_lines_describe_payload():
    lines = summarize_payload(PAYLOAD)

    assert lines[0] == "Model: us.anthropic.claude-sonnet-4-5-20250929-v1:0"
    assert lines[1] == "System Instruction: " + "S" * 100 + "..."
    assert lines[2] == "Contents (3 messages):"
    assert lines[3] == "  [0] Role: user, Parts: [Text(len:5)]"
    assert lines[4] == "  [1] Role: assistant, Parts: [Thinking(len:3), Text(len:3), ToolUse(read_file)]"
    assert lines[5] == "  [2] Role: user, Parts: [ToolResult(c1), InlineData(image/png)]"
    assert lines[6] == "Tools: 2 tool definition(s) provided."


def test_summary_without_system_or_tools():
    lines = summarize_payload({"model": "m", "messages": []})
    assert lines == ["Model: m", "Contents (0 messages):"]


def test_unknown_preview_format_falls_back_to_summary():
    assert AppConfig(preview_api_call_format="xml").get_preview_format() == "summary"
    assert AppConfig(preview_api_call_format=" JSON ").get_preview_format() == "json"


@pytest.mark.asyncio
@pytest.mark.parametrize("fmt, expected", [("summary", "Contents (1 messages):"), ("json", '"messages"')])
async def test_preview_source_renders_and_never_sends(fmt, expected):
    out = io.StringIO()
    source = PreviewStreamSource(fmt=fmt, console=Console(file=out, width=200))
    payload = RequestPayload(messages=[{"role": "user", "content": "hi"}], system="sys", model_id="m")
    turn = Turn(source)
    events = [e async for e in turn.run(payload)]

    assert [e.type for e in events] == [EventType.CONTENT, EventType.FINISHED]
    assert events[0].value == PREVIEW_TEXT
    assert turn.finish_reason == PREVIEW_STOP_REASON
    assert turn.previewed_request["messages"] == payload.messages
    assert turn.previewed_request["messages"] is not payload.messages
    assert expected in out.getvalue()
