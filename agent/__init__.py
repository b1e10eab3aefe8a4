"""
Agent package - streaming turns, tool-call scheduling and continuation.

This package contains the runtime core split into logical modules:
- types: requests, results, states and confirmation outcomes
- events: stream events and tool-call progress updates
- errors: error taxonomy
- cancellation: cooperative CancelToken
- stream: content stream source contract and fragments
- turn: Turn orchestrator (one request, streamed as events)
- allowlist: session approval memory
- confirmation: confirmers and argument modifiers
- results: tool_result block builders
- scheduler: ToolCallScheduler (validate, confirm, execute)
- chat: conversation history, repair and compression
- next_speaker: auxiliary "who speaks next" check
- preview: API call preview source
- client: payload assembly and history bookkeeping
- continuation: ContinuationController (turn -> tools -> turn)
- session: Bedrock-backed wiring (import agent.session directly)
"""

from .types import (
    ConfirmationOutcome,
    ConfirmationRequest,
    ErrorInfo,
    ErrorKind,
    ToolCallRequest,
    ToolCallResult,
    ToolCallState,
)
from .events import ChatCompressionInfo, EventType, StreamEvent, Thought, ToolCallUpdate
from .errors import (
    AgentError,
    CancellationError,
    InvalidTransitionError,
    MalformedFragmentError,
    SchedulerBusyError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
    TransportError,
)
from .cancellation import CancelToken
from .stream import ContentStreamSource, Fragment, RequestPayload, ScriptedStreamSource
from .turn import Turn
from .allowlist import SessionAllowList
from .confirmation import AutoApproveConfirmer, Confirmer, ConsoleConfirmer, ConsoleModifier, Modifier
from .scheduler import ToolCall, ToolCallScheduler
from .chat import ChatHistory
from .next_speaker import NextSpeakerChecker
from .preview import PreviewStreamSource
from .client import AgentClient
from .continuation import ContinuationController

__all__ = [
    # Data types
    "ConfirmationOutcome",
    "ConfirmationRequest",
    "ErrorInfo",
    "ErrorKind",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCallState",
    "ToolCall",

    # Events
    "ChatCompressionInfo",
    "EventType",
    "StreamEvent",
    "Thought",
    "ToolCallUpdate",

    # Errors
    "AgentError",
    "CancellationError",
    "InvalidTransitionError",
    "MalformedFragmentError",
    "SchedulerBusyError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolValidationError",
    "TransportError",

    # Runtime
    "CancelToken",
    "ContentStreamSource",
    "Fragment",
    "RequestPayload",
    "ScriptedStreamSource",
    "Turn",
    "SessionAllowList",
    "Confirmer",
    "Modifier",
    "AutoApproveConfirmer",
    "ConsoleConfirmer",
    "ConsoleModifier",
    "ToolCallScheduler",
    "ChatHistory",
    "NextSpeakerChecker",
    "PreviewStreamSource",
    "AgentClient",
    "ContinuationController",
]
