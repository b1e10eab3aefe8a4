"""
Data model shared by the turn orchestrator, the scheduler and the
continuation controller.
"""

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ToolCallState(str, Enum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ToolCallState.SUCCESS, ToolCallState.ERROR, ToolCallState.CANCELLED})


class ConfirmationOutcome(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    PROCEED_ALWAYS_SERVER = "proceed_always_server"
    MODIFY_THEN_PROCEED = "modify_then_proceed"
    CANCEL = "cancel"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXECUTION = "execution"
    TRANSPORT = "transport"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


@dataclass
class ErrorInfo:
    """Structured error descriptor carried by results and Error events"""
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


def new_call_id(name: str) -> str:
    """Generate a call id for backends that omit one."""
    return f"{name}-{int(time.time() * 1000)}-{os.urandom(4).hex()}"


@dataclass
class ToolCallRequest:
    """A request from the model (or the client) to run one tool"""
    call_id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    client_initiated: bool = False


@dataclass
class ToolCallResult:
    """Terminal outcome of one request; produced once by the scheduler"""
    call_id: str
    response_parts: List[Dict[str, Any]] = field(default_factory=list)
    display: Optional[str] = None
    error: Optional[ErrorInfo] = None


@dataclass
class ConfirmationRequest:
    """What the user is asked before a call with side effects runs"""
    tool_name: str
    kind: str = "exec"  # exec, edit, mcp, info
    title: str = ""
    details: str = ""
    args: Dict[str, Any] = field(default_factory=dict)
    server_name: Optional[str] = None
    call_id: str = ""
