"""
Tool call scheduler.

Takes the batch of tool-call requests produced by one turn and drives every
call through validation, confirmation and execution:

    validating -> scheduled | awaiting_approval | error
    awaiting_approval -> scheduled | validating (after modify) | cancelled
    scheduled -> executing -> success | error
    (cancellation may also end scheduled and executing calls)

Preparation runs concurrently for the whole batch, and nothing executes until
every call has left validating/awaiting_approval. Scheduled calls then start
together and run concurrently.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from tools.base import Tool, ToolResult
from tools.registry import ToolRegistry

from .allowlist import SessionAllowList
from .cancellation import CancelToken, until_cancelled
from .confirmation import Confirmer, Modifier
from .errors import (
    InvalidTransitionError,
    SchedulerBusyError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
)
from .events import ToolCallUpdate
from .results import cancelled_result, error_result, success_result
from .types import (
    ConfirmationOutcome,
    ConfirmationRequest,
    ErrorInfo,
    ErrorKind,
    ToolCallRequest,
    ToolCallResult,
    ToolCallState,
)

logger = logging.getLogger(__name__)

S = ToolCallState

_TRANSITIONS = {
    S.VALIDATING: {S.SCHEDULED, S.AWAITING_APPROVAL, S.ERROR},
    S.AWAITING_APPROVAL: {S.SCHEDULED, S.VALIDATING, S.CANCELLED, S.ERROR},
    S.SCHEDULED: {S.EXECUTING, S.CANCELLED},
    S.EXECUTING: {S.SUCCESS, S.ERROR, S.CANCELLED},
}

UpdateObserver = Callable[[ToolCallUpdate], Optional[Awaitable[None]]]
BatchObserver = Callable[[List["ToolCall"]], Optional[Awaitable[None]]]


@dataclass
class ToolCall:
    """Scheduler-owned record of one request's progress"""
    request: ToolCallRequest
    args: Dict[str, Any] = field(default_factory=dict)
    tool: Optional[Tool] = None
    state: ToolCallState = ToolCallState.VALIDATING
    result: Optional[ToolCallResult] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    duration_ms: Optional[int] = None
    outcome: Optional[ConfirmationOutcome] = None
    confirmation: Optional[ConfirmationRequest] = None
    live_output: Any = None

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def name(self) -> str:
        return self.request.name

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


_CLOSED = object()


class OutputChannel:
    """Incremental output of one executing call.

    ``send`` is safe to call from worker threads; chunks are delivered on the
    event loop in the order they were sent.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def send(self, chunk: Any) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, chunk)
        except RuntimeError:
            pass

    def close(self) -> None:
        self._closed = True
        self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        chunk = await self._queue.get()
        if chunk is _CLOSED:
            raise StopAsyncIteration
        return chunk


class ToolCallScheduler:
    """Validates, confirms and executes one batch of tool calls at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        confirmer: Confirmer,
        allowlist: Optional[SessionAllowList] = None,
        modifier: Optional[Modifier] = None,
        on_update: Optional[UpdateObserver] = None,
        on_batch_complete: Optional[BatchObserver] = None,
    ):
        self.registry = registry
        self.confirmer = confirmer
        self.allowlist = allowlist if allowlist is not None else SessionAllowList()
        self.modifier = modifier
        self.on_update = on_update
        self.on_batch_complete = on_batch_complete
        self._calls: List[ToolCall] = []
        self._active = False

    @property
    def is_busy(self) -> bool:
        return self._active

    @property
    def calls(self) -> List[ToolCall]:
        """Calls of the current (or last) batch, in request order"""
        return list(self._calls)

    # ------------------------------------------------------------------
    # Batch entry point
    # ------------------------------------------------------------------

    async def schedule(
        self,
        requests: Sequence[ToolCallRequest],
        cancel_token: Optional[CancelToken] = None,
    ) -> List[ToolCall]:
        """Run a batch to completion and return its calls in request order."""
        if self._active:
            raise SchedulerBusyError("A tool batch is already running")
        seen: set = set()
        for req in requests:
            if req.call_id in seen:
                raise ValueError(f"Duplicate call id in batch: {req.call_id}")
            seen.add(req.call_id)

        token = cancel_token or CancelToken()
        calls = [ToolCall(request=req, args=dict(req.args or {})) for req in requests]
        self._calls = calls
        self._active = True
        logger.info(f"Scheduling batch of {len(calls)} tool call(s): {[c.name for c in calls]}")
        try:
            for call in calls:
                await self._notify(call)
            await asyncio.gather(*(self._prepare(call, token) for call in calls))
            await self._execute_scheduled(calls, token)
        finally:
            self._active = False

        counts: Dict[str, int] = {}
        for call in calls:
            counts[call.state.value] = counts.get(call.state.value, 0) + 1
        logger.info(f"Batch complete: {counts}")
        await self._call_observer(self.on_batch_complete, list(calls))
        return calls

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _set_state(self, call: ToolCall, state: ToolCallState,
                         result: Optional[ToolCallResult] = None) -> None:
        if state not in _TRANSITIONS.get(call.state, ()):
            raise InvalidTransitionError(f"{call.call_id}: {call.state.value} -> {state.value}")
        if state.is_terminal and result is None:
            raise InvalidTransitionError(f"{call.call_id}: terminal state {state.value} without a result")
        prev = call.state
        call.state = state
        if state == S.EXECUTING:
            call.started_at = time.time()
        if state.is_terminal:
            call.result = result
            call.duration_ms = int((time.time() - (call.started_at or call.created_at)) * 1000)
        logger.debug(f"Tool call {call.call_id} ({call.name}): {prev.value} -> {state.value}")
        await self._notify(call)

    async def _notify(self, call: ToolCall, output: Any = None) -> None:
        await self._call_observer(
            self.on_update, ToolCallUpdate(call.call_id, call.name, call.state, output)
        )

    async def _call_observer(self, observer: Optional[Callable], payload: Any) -> None:
        if observer is None:
            return
        try:
            ret = observer(payload)
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            logger.exception("Scheduler observer failed")

    # ------------------------------------------------------------------
    # Preparation: resolve, validate, confirm
    # ------------------------------------------------------------------

    async def _fail(self, call: ToolCall, kind: ErrorKind, message: str, **details: Any) -> None:
        await self._set_state(call, S.ERROR, error_result(call.call_id, ErrorInfo(kind, message, details)))

    async def _prepare(self, call: ToolCall, token: CancelToken) -> None:
        try:
            tool = self.registry.get(call.name)
        except ToolNotFoundError as e:
            await self._fail(call, ErrorKind.NOT_FOUND, str(e), available=self.registry.names())
            return
        call.tool = tool

        while True:
            try:
                problem = tool.validate(call.args)
            except ToolValidationError as e:
                problem = str(e)
            except Exception as e:
                problem = f"{type(e).__name__}: {e}"
            if problem:
                await self._fail(
                    call, ErrorKind.VALIDATION,
                    f"Invalid parameters for tool '{tool.name}': {problem}",
                    args=dict(call.args),
                )
                return

            try:
                confirmation = tool.requires_confirmation(call.args, self.allowlist)
            except Exception as e:
                logger.exception(f"Confirmation check failed for {call.call_id}")
                await self._fail(call, ErrorKind.INTERNAL, f"Confirmation check failed: {e}")
                return
            if confirmation is None:
                await self._set_state(call, S.SCHEDULED)
                return

            confirmation.call_id = call.call_id
            call.confirmation = confirmation
            await self._set_state(call, S.AWAITING_APPROVAL)
            try:
                answered, outcome = await until_cancelled(self.confirmer.ask(confirmation), token)
            except Exception as e:
                logger.exception(f"Confirmation failed for {call.call_id}")
                await self._fail(call, ErrorKind.INTERNAL, f"Confirmation failed: {e}")
                return
            if not answered:
                await self._set_state(call, S.CANCELLED,
                                      cancelled_result(call.call_id, "Cancelled while awaiting approval."))
                return

            call.outcome = outcome
            logger.info(f"Confirmation for {call.call_id} ({tool.name}): {outcome.value}")
            if outcome == ConfirmationOutcome.CANCEL:
                await self._set_state(call, S.CANCELLED,
                                      cancelled_result(call.call_id, "User declined the tool call."))
                return
            if outcome == ConfirmationOutcome.PROCEED_ALWAYS:
                self.allowlist.allow_tool(tool.name)
            elif outcome == ConfirmationOutcome.PROCEED_ALWAYS_SERVER:
                if tool.server_name:
                    self.allowlist.allow_server(tool.server_name)
                else:
                    self.allowlist.allow_tool(tool.name)
            elif outcome == ConfirmationOutcome.MODIFY_THEN_PROCEED and self.modifier is not None:
                try:
                    answered, new_args = await until_cancelled(
                        self.modifier.modify(tool.name, dict(call.args)), token
                    )
                except Exception as e:
                    logger.exception(f"Modify failed for {call.call_id}")
                    await self._fail(call, ErrorKind.INTERNAL, f"Modify failed: {e}")
                    return
                if not answered:
                    await self._set_state(call, S.CANCELLED,
                                          cancelled_result(call.call_id, "Cancelled while modifying."))
                    return
                if not isinstance(new_args, dict):
                    await self._fail(
                        call, ErrorKind.VALIDATION,
                        f"Invalid parameters for tool '{tool.name}': modified arguments must be an object, "
                        f"got {type(new_args).__name__}",
                    )
                    return
                call.args = new_args
                call.confirmation = None
                await self._set_state(call, S.VALIDATING)
                continue

            await self._set_state(call, S.SCHEDULED)
            return

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_scheduled(self, calls: List[ToolCall], token: CancelToken) -> None:
        scheduled = [c for c in calls if c.state == S.SCHEDULED]
        if not scheduled:
            return
        if token.is_cancelled:
            for call in scheduled:
                await self._set_state(call, S.CANCELLED,
                                      cancelled_result(call.call_id, "Cancelled before execution."))
            return
        for call in scheduled:
            await self._set_state(call, S.EXECUTING)
        await asyncio.gather(*(self._execute(call, token) for call in scheduled))

    async def _pump(self, call: ToolCall, channel: OutputChannel) -> None:
        async for chunk in channel:
            call.live_output = chunk
            await self._notify(call, output=chunk)

    async def _execute(self, call: ToolCall, token: CancelToken) -> None:
        channel = OutputChannel(asyncio.get_running_loop())
        pump = asyncio.ensure_future(self._pump(call, channel))
        try:
            finished, value = await until_cancelled(
                call.tool.execute(dict(call.args), token, channel.send), token
            )
        except ToolExecutionError as e:
            logger.warning(f"Tool {call.name} failed: {e}")
            state, result = S.ERROR, error_result(call.call_id, ErrorInfo(
                ErrorKind.EXECUTION, str(e), dict(e.details)
            ))
        except Exception as e:
            logger.exception(f"Tool {call.name} raised during execution")
            state, result = S.ERROR, error_result(call.call_id, ErrorInfo(
                ErrorKind.EXECUTION,
                f"{call.name} raised {type(e).__name__}: {e}",
                {"exception_type": type(e).__name__},
            ))
        else:
            if not finished:
                state, result = S.CANCELLED, cancelled_result(call.call_id, "Cancelled during execution.")
            else:
                state, result = self._result_from(call, value)
        finally:
            channel.close()
            await pump
        await self._set_state(call, state, result)

    def _result_from(self, call: ToolCall, value: Any) -> Tuple[ToolCallState, ToolCallResult]:
        if not isinstance(value, ToolResult):
            return S.SUCCESS, success_result(call.call_id, value)
        if value.success:
            return S.SUCCESS, success_result(call.call_id, value.output, value.display)
        details = dict(value.details)
        details["exit_code"] = value.exit_code
        if value.output:
            details["output"] = value.output
        return S.ERROR, error_result(
            call.call_id,
            ErrorInfo(ErrorKind.EXECUTION, value.error or f"{call.name} failed", details),
            value.display,
        )
