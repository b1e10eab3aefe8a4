"""
API call preview: print the request that would be sent instead of sending it.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from rich.console import Console
from rich.json import JSON
from rich.rule import Rule

from config import AppConfig, app_config

from . import stream as fragments
from .stream import ContentStreamSource, Fragment, RequestPayload

logger = logging.getLogger(__name__)

PREVIEW_TEXT = "[API Call Previewed - Not Sent]"
PREVIEW_STOP_REASON = "preview"


def _summarize_block(block: Any) -> str:
    if isinstance(block, str):
        return f"Text(len:{len(block)})"
    if not isinstance(block, dict):
        return "UnknownPart"
    btype = block.get("type")
    if btype == "text":
        return f"Text(len:{len(block.get('text', ''))})"
    if btype == "thinking":
        return f"Thinking(len:{len(block.get('thinking', ''))})"
    if btype == "tool_use":
        return f"ToolUse({block.get('name', '?')})"
    if btype == "tool_result":
        return f"ToolResult({block.get('tool_use_id', '?')})"
    if btype in ("image", "document"):
        return f"InlineData({block.get('source', {}).get('media_type', '?')})"
    return "UnknownPart"


def summarize_payload(payload: Dict[str, Any]) -> List[str]:
    """Short, line-per-fact description of a request payload"""
    lines = [f"Model: {payload.get('model') or 'default'}"]
    system = payload.get("system")
    if system:
        lines.append(f"System Instruction: {system[:100]}{'...' if len(system) > 100 else ''}")
    messages = payload.get("messages") or []
    lines.append(f"Contents ({len(messages)} messages):")
    for index, msg in enumerate(messages):
        content = msg.get("content")
        blocks = [content] if isinstance(content, str) else (content or [])
        parts = ", ".join(_summarize_block(b) for b in blocks) or "No Parts"
        lines.append(f"  [{index}] Role: {msg.get('role', '?')}, Parts: [{parts}]")
    tools = payload.get("tools") or []
    if tools:
        lines.append(f"Tools: {len(tools)} tool definition(s) provided.")
    return lines


class PreviewStreamSource(ContentStreamSource):
    """Stands in for a real source while preview mode is on.

    Never contacts the backend. Renders the payload, then yields a preview
    fragment holding a copy of it followed by a done fragment.
    """

    def __init__(self, fmt: Optional[str] = None, console: Optional[Console] = None,
                 config: Optional[AppConfig] = None):
        cfg = config or app_config
        self.format = fmt if fmt in ("summary", "json") else cfg.get_preview_format()
        self.console = console or Console()

    def render(self, payload: Dict[str, Any]) -> None:
        self.console.print(Rule("API Call Preview"))
        if self.format == "json":
            self.console.print(JSON.from_data(payload, default=str))
        else:
            for line in summarize_payload(payload):
                self.console.print(line, markup=False, highlight=False)
        self.console.print(Rule("End of API Call Preview"))

    async def open_stream(self, payload: RequestPayload, cancel_token: Any = None) -> AsyncIterator[Fragment]:
        snapshot = payload.to_dict()
        logger.info(f"API call previewed ({self.format}), {len(snapshot['messages'])} messages not sent")
        self.render(snapshot)
        yield Fragment(fragments.PREVIEW, text=PREVIEW_TEXT, payload=snapshot)
        yield fragments.done(PREVIEW_STOP_REASON)
