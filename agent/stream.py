"""
Content stream source contract and the request payload it consumes.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

# Fragment kinds a source may produce
TEXT = "text"
THOUGHT = "thought"
FUNCTION_CALL = "function_call"
USAGE = "usage"
DONE = "done"
PREVIEW = "preview"


@dataclass
class Fragment:
    """One piece of a streamed model response.

    text/thought carry ``text`` (thought may carry ``signature``),
    function_call carries ``call_id``, ``name`` and ``args``, usage carries
    ``usage``, done carries ``stop_reason``, preview carries ``payload``.
    """
    kind: str
    text: str = ""
    signature: Optional[str] = None
    call_id: Optional[str] = None
    name: Optional[str] = None
    args: Any = None
    usage: Optional[Dict[str, Any]] = None
    stop_reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


@dataclass
class RequestPayload:
    """Everything one model request needs"""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    system: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    model_id: Optional[str] = None
    is_continuation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model_id,
            "system": self.system,
            "messages": copy.deepcopy(self.messages),
            "tools": copy.deepcopy(self.tools),
        }


class ContentStreamSource(ABC):
    """Produces the fragments of one model response"""

    @abstractmethod
    def open_stream(self, payload: RequestPayload, cancel_token: Any = None) -> AsyncIterator[Fragment]:
        pass


ScriptStep = Union[Fragment, BaseException, float]


class ScriptedStreamSource(ContentStreamSource):
    """Replays canned responses; one script per ``open_stream`` call.

    A script item is a Fragment to yield, an exception to raise at that
    point, or a float number of seconds to sleep. Payloads are recorded in
    ``requests`` for inspection.
    """

    def __init__(self, scripts: Iterable[Iterable[ScriptStep]] = ()):
        self.scripts: List[List[ScriptStep]] = [list(s) for s in scripts]
        self.requests: List[RequestPayload] = []
        self.closed = 0

    async def open_stream(self, payload: RequestPayload, cancel_token: Any = None) -> AsyncIterator[Fragment]:
        self.requests.append(payload)
        if not self.scripts:
            raise RuntimeError("ScriptedStreamSource has no script left")
        steps = self.scripts.pop(0)
        try:
            for step in steps:
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, (int, float)):
                    await asyncio.sleep(step)
                    continue
                yield step
        finally:
            self.closed += 1


def text(value: str) -> Fragment:
    return Fragment(TEXT, text=value)


def thought(value: str) -> Fragment:
    return Fragment(THOUGHT, text=value)


def function_call(name: str, args: Any = None, call_id: Optional[str] = None) -> Fragment:
    return Fragment(FUNCTION_CALL, name=name, args={} if args is None else args, call_id=call_id)


def usage(input_tokens: int = 0, output_tokens: int = 0) -> Fragment:
    return Fragment(USAGE, usage={"input_tokens": input_tokens, "output_tokens": output_tokens})


def done(stop_reason: str = "end_turn") -> Fragment:
    return Fragment(DONE, stop_reason=stop_reason)
