"""
Stream event and tool-call progress data types.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .types import ErrorInfo, ToolCallState


class EventType(str, Enum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    CHAT_COMPRESSED = "chat_compressed"
    USAGE_METADATA = "usage_metadata"
    FINISHED = "finished"


@dataclass
class Thought:
    """A reasoning summary; subject is parsed from a leading **bold** line"""
    subject: str = ""
    description: str = ""


@dataclass
class ChatCompressionInfo:
    """Estimated history size in tokens before and after compression"""
    before: int
    after: int


@dataclass
class StreamEvent:
    """Event emitted by a Turn, in the order the backend produced it.

    value by type: content -> str, thought -> Thought,
    tool_call_request -> ToolCallRequest, error -> ErrorInfo,
    chat_compressed -> ChatCompressionInfo, usage_metadata -> dict,
    finished -> stop reason (str or None), user_cancelled -> None.
    """
    type: EventType
    value: Any = None

    @property
    def error(self) -> Optional[ErrorInfo]:
        return self.value if self.type == EventType.ERROR else None


@dataclass
class ToolCallUpdate:
    """Progress notification for one call: a state transition or an output chunk"""
    call_id: str
    tool_name: str
    state: ToolCallState
    output: Any = None
