"""Tool contract: schema, validation, confirmation and execution."""

import asyncio
import functools
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

import jsonschema

from config import app_config

if TYPE_CHECKING:
    from agent.types import ConfirmationRequest

logger = logging.getLogger(__name__)

OutputCallback = Callable[[Any], None]


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: Any = ""
    error: Optional[str] = None
    display: Optional[str] = None
    exit_code: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _format_json_path(path: Any) -> str:
    """Format a jsonschema deque path as a JSONPath-style string."""
    parts: List[str] = []
    for segment in path:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        elif parts:
            parts.append(f".{segment}")
        else:
            parts.append(str(segment))
    return "".join(parts)


def schema_errors(schema: Dict[str, Any], args: Any) -> List[str]:
    """Return one 'path: message' line per schema violation."""
    validator_cls = jsonschema.validators.validator_for(schema)
    validator = validator_cls(schema)
    errors = []
    for error in sorted(validator.iter_errors(args), key=lambda e: [str(p) for p in e.absolute_path]):
        path = _format_json_path(error.absolute_path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


class Tool:
    """Base class for tools the model (or the client) may call.

    Subclasses set the class attributes and implement ``execute``. Override
    ``validate_args`` for checks JSON Schema cannot express.
    """

    name: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = {"type": "object", "properties": {}}
    # Origin server for remote (MCP-style) tools; None for local tools
    server_name: Optional[str] = None
    needs_confirmation: bool = False
    confirmation_kind: str = "exec"

    def definition(self) -> Dict[str, Any]:
        """Anthropic-compatible tool definition for the request payload"""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def validate(self, args: Dict[str, Any]) -> Optional[str]:
        """Return None when args are valid, otherwise a description of every problem."""
        if not isinstance(args, dict):
            return f"arguments must be an object, got {type(args).__name__}"
        errors = schema_errors(self.input_schema, args)
        if errors:
            return "; ".join(errors)
        return self.validate_args(args)

    def validate_args(self, args: Dict[str, Any]) -> Optional[str]:
        return None

    def describe(self, args: Dict[str, Any]) -> str:
        """One-line summary shown when asking for confirmation"""
        return f"{self.name}({', '.join(f'{k}={v!r}' for k, v in args.items())})"

    def requires_confirmation(self, args: Dict[str, Any], allowlist: Any = None) -> Optional["ConfirmationRequest"]:
        from agent.types import ConfirmationRequest
        if not self.needs_confirmation:
            return None
        if allowlist is not None and allowlist.is_allowed(self.name, self.server_name):
            return None
        return ConfirmationRequest(
            tool_name=self.name,
            kind="mcp" if self.server_name else self.confirmation_kind,
            title=self.describe(args),
            details=json.dumps(args, indent=2, default=str),
            args=dict(args),
            server_name=self.server_name,
        )

    async def execute(
        self,
        args: Dict[str, Any],
        cancel_token: Any = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolResult:
        raise NotImplementedError


ToolFunction = Callable[..., Union[ToolResult, Any, Awaitable[Any]]]


class FunctionTool(Tool):
    """Adapt a plain function (sync or async) into a Tool.

    The function receives the call arguments as keyword arguments, plus
    ``cancel_token`` and ``on_output`` when its signature accepts them. Sync
    functions run in the default executor. A non-ToolResult return value is
    treated as successful output.
    """

    def __init__(
        self,
        name: str,
        fn: ToolFunction,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        needs_confirmation: bool = False,
        confirmation_kind: str = "exec",
        server_name: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        self.name = name
        self.fn = fn
        self.description = description or (inspect.getdoc(fn) or "")
        self.input_schema = input_schema or {"type": "object", "properties": {}}
        self.needs_confirmation = needs_confirmation
        self.confirmation_kind = confirmation_kind
        self.server_name = server_name
        # 0 in config means no default timeout
        self.timeout_s = timeout_s if timeout_s is not None else (app_config.tool_timeout_seconds or None)
        params = inspect.signature(fn).parameters
        self._accepts = {p for p in ("cancel_token", "on_output") if p in params}

    async def execute(
        self,
        args: Dict[str, Any],
        cancel_token: Any = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ToolResult:
        kwargs = dict(args)
        if "cancel_token" in self._accepts:
            kwargs["cancel_token"] = cancel_token
        if "on_output" in self._accepts:
            kwargs["on_output"] = on_output

        if inspect.iscoroutinefunction(self.fn):
            pending = self.fn(**kwargs)
        else:
            loop = asyncio.get_running_loop()
            pending = loop.run_in_executor(None, functools.partial(self.fn, **kwargs))

        try:
            if self.timeout_s:
                value = await asyncio.wait_for(pending, self.timeout_s)
            else:
                value = await pending
        except asyncio.TimeoutError:
            logger.warning(f"Tool {self.name} timed out after {self.timeout_s}s")
            return ToolResult(
                success=False,
                error=f"{self.name} timed out after {self.timeout_s}s",
                details={"timeout_s": self.timeout_s},
            )

        if isinstance(value, ToolResult):
            return value
        return ToolResult(success=True, output="" if value is None else value)
