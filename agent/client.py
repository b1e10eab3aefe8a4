"""
Agent client: assembles request payloads, keeps history and opens turns.
"""

import logging
from typing import Any, AsyncIterator, Optional

from config import AppConfig, app_config, get_context_window, model_config
from tools.registry import ToolRegistry

from .cancellation import CancelToken
from .chat import ChatHistory, Summarizer
from .events import ChatCompressionInfo, EventType, StreamEvent
from .preview import PreviewStreamSource
from .stream import ContentStreamSource, RequestPayload
from .turn import Turn

logger = logging.getLogger(__name__)


class AgentClient:
    """Owns the conversation with one model.

    With PREVIEW_API_CALL_ENABLED the given source is replaced by a
    PreviewStreamSource, so no request leaves the process.
    """

    def __init__(
        self,
        source: ContentStreamSource,
        registry: ToolRegistry,
        history: Optional[ChatHistory] = None,
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        summarizer: Optional[Summarizer] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or app_config
        if self.config.preview_api_call_enabled:
            logger.info("API call preview enabled; requests will not be sent")
            source = PreviewStreamSource(config=self.config)
        self.source = source
        self.registry = registry
        self.history = history if history is not None else ChatHistory()
        self.system_prompt = system_prompt
        self.model_id = model_id or model_config.model_id
        self.summarizer = summarizer

    def new_turn(self, is_continuation: bool = False) -> Turn:
        return Turn(self.source, is_continuation=is_continuation)

    def build_payload(self, is_continuation: bool = False) -> RequestPayload:
        return RequestPayload(
            messages=self.history.curated(),
            system=self.system_prompt,
            tools=self.registry.definitions(),
            model_id=self.model_id,
            is_continuation=is_continuation,
        )

    async def try_compress(self) -> Optional[ChatCompressionInfo]:
        limit = get_context_window(self.model_id) * self.config.compression_threshold
        estimate = self.history.estimate_tokens()
        if estimate <= limit:
            return None
        logger.info(f"History ~{estimate} tokens exceeds {int(limit)}, compressing")
        return await self.history.compress(self.summarizer, self.config.compression_keep_recent)

    async def send_message_stream(
        self,
        turn: Turn,
        content: Any,
        cancel_token: Optional[CancelToken] = None,
        kind: str = "input",
    ) -> AsyncIterator[StreamEvent]:
        """Record ``content`` as the next user message and stream the model's reply.

        The reply is recorded in history only when the turn completes and
        was not a preview.
        """
        info = await self.try_compress()
        if info is not None:
            yield StreamEvent(EventType.CHAT_COMPRESSED, info)

        self.history.add_user(content, kind=kind)
        payload = self.build_payload(turn.is_continuation)
        async for event in turn.run(payload, cancel_token):
            yield event
        if turn.status == "completed" and turn.previewed_request is None:
            self.history.add_model(turn.model_content)
