"""
Builders for the tool_result blocks sent back to the model.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from .types import ErrorInfo, ErrorKind, ToolCallResult

CANCELLED_MARKER = "[Operation Cancelled]"


def _as_content(output: Any) -> Any:
    """tool_result content is a string or a list of content blocks."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, list) and all(isinstance(b, dict) and "type" in b for b in output):
        return output
    return json.dumps(output, default=str)


def success_result(call_id: str, output: Any, display: Optional[str] = None) -> ToolCallResult:
    content = _as_content(output)
    return ToolCallResult(
        call_id=call_id,
        response_parts=[{"type": "tool_result", "tool_use_id": call_id, "content": content}],
        display=display if display is not None else (content if isinstance(content, str) else None),
    )


def error_result(call_id: str, error: ErrorInfo, display: Optional[str] = None) -> ToolCallResult:
    text = f"Error: {error.message}"
    if error.details.get("exit_code") is not None:
        text += f"\nExit code: {error.details['exit_code']}"
    if error.details.get("output"):
        text += f"\nOutput:\n{error.details['output']}"
    return ToolCallResult(
        call_id=call_id,
        response_parts=[{"type": "tool_result", "tool_use_id": call_id, "content": text, "is_error": True}],
        display=display or text,
        error=error,
    )


def cancelled_result(call_id: str, reason: str = "User cancelled the tool call.") -> ToolCallResult:
    text = f"{CANCELLED_MARKER} Reason: {reason}"
    return ToolCallResult(
        call_id=call_id,
        response_parts=[{"type": "tool_result", "tool_use_id": call_id, "content": text, "is_error": True}],
        display=text,
        error=ErrorInfo(ErrorKind.CANCELLED, reason),
    )


def merge_response_parts(calls: Iterable[Any]) -> List[Dict[str, Any]]:
    """Concatenate the response parts of terminal calls, preserving request order."""
    parts: List[Dict[str, Any]] = []
    for call in calls:
        if call.result is None:
            raise ValueError(f"Call {call.call_id} has no result (state {call.state.value})")
        parts.extend(call.result.response_parts)
    return parts
