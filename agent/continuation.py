"""
Continuation controller: feeds tool results back to the model until the
exchange settles.

    user message -> turn -> tool batch -> follow-up turn -> ... -> turn
    without tool calls -> (optional "Please continue." turn) -> done
"""

import dataclasses
import logging
from typing import AsyncIterator, List, Optional, Sequence

from config import AppConfig, app_config

from .cancellation import CancelToken
from .client import AgentClient
from .events import EventType, StreamEvent
from .next_speaker import CONTINUE_DIRECTIVE, MODEL, NextSpeakerChecker
from .preview import PREVIEW_STOP_REASON
from .results import merge_response_parts
from .scheduler import ToolCall, ToolCallScheduler
from .turn import Turn
from .types import ErrorInfo, ErrorKind, ToolCallRequest

logger = logging.getLogger(__name__)


class ContinuationController:
    """Drives turns and tool batches for one user message at a time."""

    def __init__(
        self,
        client: AgentClient,
        scheduler: ToolCallScheduler,
        next_speaker: Optional[NextSpeakerChecker] = None,
        config: Optional[AppConfig] = None,
    ):
        self.client = client
        self.scheduler = scheduler
        self.next_speaker = next_speaker
        self.config = config or app_config
        self.turns: List[Turn] = []
        self.batches: List[List[ToolCall]] = []

    @property
    def last_turn(self) -> Optional[Turn]:
        return self.turns[-1] if self.turns else None

    async def run(self, message, cancel_token: Optional[CancelToken] = None) -> AsyncIterator[StreamEvent]:
        """Send a user message and stream every event of the resulting exchange."""
        token = cancel_token or CancelToken()
        content, kind = message, "input"
        quiet_continuations = 0
        self.turns = []
        self.batches = []

        for _ in range(self.config.max_tool_iterations):
            turn = self.client.new_turn(is_continuation=kind != "input")
            self.turns.append(turn)
            async for event in self.client.send_message_stream(turn, content, token, kind=kind):
                yield event
            if turn.status != "completed":
                return

            if turn.pending_tool_calls:
                quiet_continuations = 0
                calls = await self.scheduler.schedule(turn.pending_tool_calls, token)
                self.batches.append(calls)
                parts = merge_response_parts(c for c in calls if not c.request.client_initiated)
                if token.is_cancelled:
                    # Keep every tool_use answered; the model is not asked again
                    self.client.history.add_user(parts, kind="continuation")
                    logger.info("Exchange cancelled during tool batch; no follow-up turn")
                    yield StreamEvent(EventType.USER_CANCELLED)
                    return
                if not parts:
                    return
                content, kind = parts, "continuation"
                continue

            if turn.finish_reason == PREVIEW_STOP_REASON:
                return
            if quiet_continuations >= self.config.max_auto_continuations:
                return
            if not await self._model_should_continue(turn) or token.is_cancelled:
                return
            quiet_continuations += 1
            logger.info(f"Auto-continuing ({quiet_continuations}/{self.config.max_auto_continuations})")
            content, kind = CONTINUE_DIRECTIVE, "continuation"

        limit = self.config.max_tool_iterations
        logger.warning(f"Reached maximum of {limit} turns for one message")
        yield StreamEvent(EventType.ERROR, ErrorInfo(
            ErrorKind.INTERNAL, f"Reached maximum of {limit} turns for one message.", {"max_turns": limit}
        ))

    async def _model_should_continue(self, turn: Turn) -> bool:
        if turn.finish_reason == "max_tokens":
            logger.info("Model stopped on max_tokens; continuing")
            return True
        if not self.config.next_speaker_check_enabled or self.next_speaker is None:
            return False
        return await self.next_speaker.check(self.client.history.messages) == MODEL

    async def run_client_calls(
        self,
        requests: Sequence[ToolCallRequest],
        cancel_token: Optional[CancelToken] = None,
    ) -> List[ToolCall]:
        """Run tool calls the client issued itself.

        Results are recorded in history but never start a model turn.
        """
        requests = [dataclasses.replace(r, client_initiated=True) for r in requests]
        calls = await self.scheduler.schedule(requests, cancel_token)
        self.batches.append(calls)
        tool_uses = [{"type": "tool_use", "id": c.call_id, "name": c.name, "input": c.args} for c in calls]
        self.client.history.add_client_exchange(tool_uses, merge_response_parts(calls))
        return calls
