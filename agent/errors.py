"""
Error taxonomy for the agent runtime.

Errors below the Turn boundary are converted into structured ErrorInfo values
and fed back to the model; only transport failures end a Turn, and programming
faults (illegal transitions, duplicate ids, a busy scheduler) propagate.
"""

from typing import Any, Dict, Optional


class AgentError(Exception):
    """Base class for agent runtime errors"""
    pass


class ToolValidationError(AgentError):
    """Arguments failed the tool's schema or semantic checks"""
    pass


class ToolNotFoundError(AgentError):
    """The requested tool is not in the registry"""
    pass


class ToolExecutionError(AgentError):
    """A tool failed in a way it can describe; details reach the model"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class TransportError(AgentError):
    """The content stream failed, timed out or was refused"""
    pass


class MalformedFragmentError(TransportError):
    """The content stream produced a fragment that could not be interpreted"""
    pass


class CancellationError(AgentError):
    """Raised by CancelToken.raise_if_cancelled() once the token has fired"""
    pass


class SchedulerBusyError(AgentError):
    """A batch was submitted while another batch is still running"""
    pass


class InvalidTransitionError(AgentError):
    """A tool call was moved along an edge the state machine does not allow"""
    pass
