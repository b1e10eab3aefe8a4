"""
Turn orchestrator: one model request, streamed as ordered events.
"""

import asyncio
import logging
import re
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from .cancellation import CancelToken
from .errors import MalformedFragmentError
from .events import EventType, StreamEvent, Thought
from . import stream as fragments
from .stream import ContentStreamSource, Fragment, RequestPayload
from .types import ErrorInfo, ErrorKind, ToolCallRequest, new_call_id

logger = logging.getLogger(__name__)

# How long a cancelled fragment request may take to unwind before it is abandoned
CANCEL_GRACE_S = 1.0

_SUBJECT_RE = re.compile(r"^\s*\*\*(.+?)\*\*\s*(.*)$", re.S)


def parse_thought(text: str) -> Thought:
    m = _SUBJECT_RE.match(text or "")
    if m:
        return Thought(subject=m.group(1).strip(), description=m.group(2).strip())
    return Thought(subject="", description=(text or "").strip())


def _consume(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


class Turn:
    """A single request/response exchange with the model.

    ``run`` is an async generator: lazy, finite and usable once. Tool-call
    requests seen in the stream are surfaced as events and collected in
    ``pending_tool_calls`` for the scheduler.
    """

    def __init__(self, source: ContentStreamSource, turn_id: Optional[str] = None,
                 is_continuation: bool = False):
        self.source = source
        self.turn_id = turn_id or uuid.uuid4().hex[:12]
        self.is_continuation = is_continuation
        self.status = "pending"  # running, completed, cancelled, error
        self.pending_tool_calls: List[ToolCallRequest] = []
        self.model_content: List[Dict[str, Any]] = []
        self.usage: Optional[Dict[str, Any]] = None
        self.finish_reason: Optional[str] = None
        self.previewed_request: Optional[Dict[str, Any]] = None
        self.error: Optional[ErrorInfo] = None
        self._text: List[str] = []
        self._pending_text: List[str] = []
        self._call_ids: set = set()

    @property
    def text(self) -> str:
        return "".join(self._text)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def run(self, payload: RequestPayload, cancel_token: Optional[CancelToken] = None) -> AsyncIterator[StreamEvent]:
        if self.status != "pending":
            raise RuntimeError(f"Turn {self.turn_id} has already run")
        token = cancel_token or CancelToken()
        self.status = "running"
        logger.info(f"Turn {self.turn_id} started ({len(payload.messages)} messages, continuation={self.is_continuation})")

        if token.is_cancelled:
            yield self._cancelled()
            return

        stream = self.source.open_stream(payload, token)
        try:
            while True:
                try:
                    fragment = await self._next_fragment(stream, token)
                except StopAsyncIteration:
                    if token.is_cancelled:
                        yield self._cancelled()
                        return
                    break
                except Exception as e:
                    # A source unwinding because of cancellation is not a transport failure
                    yield self._cancelled() if token.is_cancelled else self._failed(e)
                    return
                if fragment is None or token.is_cancelled:
                    yield self._cancelled()
                    return
                try:
                    events = self._handle(fragment)
                except MalformedFragmentError as e:
                    yield self._failed(e)
                    return
                for event in events:
                    yield event
        finally:
            await self._close(stream)

        self._flush_text()
        self.status = "completed"
        logger.info(
            f"Turn {self.turn_id} completed: stop_reason={self.finish_reason}, "
            f"{len(self.pending_tool_calls)} tool call(s)"
        )
        yield StreamEvent(EventType.FINISHED, self.finish_reason)

    async def _next_fragment(self, stream: Any, token: CancelToken) -> Optional[Fragment]:
        """Next fragment, or None when cancellation wins the race."""
        task = asyncio.ensure_future(stream.__anext__())
        waiter = asyncio.ensure_future(token.wait_async())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.wait({task}, timeout=CANCEL_GRACE_S)
        task.add_done_callback(_consume)
        return None

    async def _close(self, stream: Any) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Closing stream for turn {self.turn_id} failed: {e}")

    def _cancelled(self) -> StreamEvent:
        self.status = "cancelled"
        logger.info(f"Turn {self.turn_id} cancelled")
        return StreamEvent(EventType.USER_CANCELLED)

    def _failed(self, e: Exception) -> StreamEvent:
        self.status = "error"
        self.error = ErrorInfo(ErrorKind.TRANSPORT, str(e) or type(e).__name__,
                               {"exception_type": type(e).__name__})
        logger.error(f"Turn {self.turn_id} failed: {type(e).__name__}: {e}")
        return StreamEvent(EventType.ERROR, self.error)

    # ------------------------------------------------------------------
    # Fragment mapping
    # ------------------------------------------------------------------

    def _flush_text(self) -> None:
        if self._pending_text:
            self.model_content.append({"type": "text", "text": "".join(self._pending_text)})
            self._pending_text = []

    def _handle(self, fragment: Any) -> List[StreamEvent]:
        if not isinstance(fragment, Fragment):
            raise MalformedFragmentError(f"Unexpected fragment: {fragment!r}")
        kind = fragment.kind

        if kind in (fragments.TEXT, fragments.PREVIEW):
            if not isinstance(fragment.text, str):
                raise MalformedFragmentError(f"{kind} fragment without text")
            if kind == fragments.PREVIEW:
                self.previewed_request = fragment.payload
            if not fragment.text:
                return []
            self._text.append(fragment.text)
            self._pending_text.append(fragment.text)
            return [StreamEvent(EventType.CONTENT, fragment.text)]

        if kind == fragments.THOUGHT:
            self._flush_text()
            if fragment.signature:
                self.model_content.append({
                    "type": "thinking",
                    "thinking": fragment.text or "",
                    "signature": fragment.signature,
                })
            return [StreamEvent(EventType.THOUGHT, parse_thought(fragment.text))]

        if kind == fragments.FUNCTION_CALL:
            return [StreamEvent(EventType.TOOL_CALL_REQUEST, self._add_tool_call(fragment))]

        if kind == fragments.USAGE:
            self.usage = dict(fragment.usage or {})
            return [StreamEvent(EventType.USAGE_METADATA, self.usage)]

        if kind == fragments.DONE:
            self.finish_reason = fragment.stop_reason
            return []

        raise MalformedFragmentError(f"Unknown fragment kind: {kind!r}")

    def _add_tool_call(self, fragment: Fragment) -> ToolCallRequest:
        name = fragment.name
        args = {} if fragment.args is None else fragment.args
        if not name or not isinstance(name, str):
            raise MalformedFragmentError("function_call fragment without a tool name")
        if not isinstance(args, dict):
            raise MalformedFragmentError(f"function_call arguments for {name} are not an object")

        call_id = fragment.call_id or new_call_id(name)
        while call_id in self._call_ids:
            logger.warning(f"Duplicate call id {call_id} in turn {self.turn_id}, generating a new one")
            call_id = new_call_id(name)
        self._call_ids.add(call_id)

        self._flush_text()
        request = ToolCallRequest(call_id=call_id, name=name, args=dict(args))
        self.pending_tool_calls.append(request)
        self.model_content.append({"type": "tool_use", "id": call_id, "name": name, "input": dict(args)})
        return request
