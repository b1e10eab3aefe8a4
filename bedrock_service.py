"""
Amazon Bedrock service module.
Handles interactions with the Bedrock runtime API (including extended thinking)
and adapts its streaming responses into turn fragments.
"""

import asyncio
import boto3
import json
import logging
import queue
import threading
from typing import Any, AsyncIterator, Dict, Generator, List, Optional
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from dataclasses import dataclass

from agent.cancellation import CancelToken
from agent.errors import CancellationError, MalformedFragmentError, TransportError
from agent.stream import ContentStreamSource, Fragment, RequestPayload
from agent import stream as fragments
from config import (
    AppConfig,
    app_config,
    aws_config,
    model_config,
    get_max_output_tokens,
    get_model_config,
    get_thinking_max_budget,
    requires_inference_profile,
    supports_thinking,
)


logger = logging.getLogger(__name__)

RETRYABLE_KEYWORDS = (
    "timeout", "timed out", "connection", "reset by peer",
    "broken pipe", "eof", "throttl", "serviceunav",
    "read timeout", "endpoint url", "connect timeout",
    "network", "socket", "aborted", "too many requests",
)


class BedrockError(TransportError):
    """Custom exception for Bedrock service errors"""
    pass


def is_retryable(error: Exception) -> bool:
    err_str = str(error).lower()
    return any(kw in err_str for kw in RETRYABLE_KEYWORDS)


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    throughput_mode: str = "cross-region"
    enable_thinking: bool = True
    thinking_budget: int = 10000

    @classmethod
    def from_model_config(cls) -> "GenerationConfig":
        return cls(
            max_tokens=model_config.max_tokens,
            temperature=model_config.temperature,
            throughput_mode=model_config.throughput_mode,
            enable_thinking=model_config.enable_thinking,
            thinking_budget=model_config.thinking_budget,
        )


@dataclass
class GenerationResult:
    """Result from a non-streaming generation request"""
    content: str = ""
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    Supports extended thinking capabilities.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"
        return get_model_config(model_id).get("base_id", model_id)

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None
    ) -> Dict[str, Any]:
        """Format the Anthropic Messages request body"""
        formatted_messages = []
        for msg in messages:
            if msg["role"] == "system":
                continue
            content = msg.get("content")
            # API requires non-empty content for every message
            if isinstance(content, str) and not content.strip():
                content = "(no content)"
            elif isinstance(content, list) and not content:
                content = [{"type": "text", "text": "(no content)"}]
            formatted_messages.append({"role": msg["role"], "content": content})

        effective_max_tokens = min(config.max_tokens, get_max_output_tokens(model_id))
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": effective_max_tokens,
            "messages": formatted_messages,
        }

        if supports_thinking(model_id) and config.enable_thinking:
            thinking_budget = min(config.thinking_budget, get_thinking_max_budget(model_id))
            # budget must stay below max_tokens with room left for the answer
            max_allowed = effective_max_tokens - 4000
            if thinking_budget > max_allowed:
                thinking_budget = max(max_allowed, 1024)
            body["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        else:
            body["temperature"] = config.temperature if config.temperature is not None else 1.0

        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools

        logger.debug(f"Request body keys: {list(body.keys())}")
        return body

    def _raise_client_error(self, e: ClientError, prefix: str) -> None:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        error_message = e.response.get("Error", {}).get("Message", str(e))
        logger.error(f"{prefix}: {error_code} - {error_message}")
        if error_code in ("ExpiredTokenException", "InvalidSignatureException"):
            raise BedrockError("AWS credentials expired. Please refresh.")
        if error_code == "ThrottlingException":
            raise BedrockError(f"Throttled by Bedrock: {error_message}")
        raise BedrockError(f"{prefix}: {error_message}")

    def generate_response(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> GenerationResult:
        """Generate a complete (non-streaming) response."""
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, system_prompt, current_model, gen_config, tools=tools
            )
            logger.info(f"Invoking model: {model_identifier}")
            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            self._raise_client_error(e, "Bedrock API error")
        except BotoCoreError as e:
            raise BedrockError(f"Bedrock connection error: {e}")

        result = GenerationResult()
        for block in response_body.get("content", []):
            if block.get("type") == "text":
                result.content += block.get("text", "")
        usage = response_body.get("usage", {})
        result.input_tokens = usage.get("input_tokens", 0)
        result.output_tokens = usage.get("output_tokens", 0)
        result.stop_reason = response_body.get("stop_reason")
        return result

    def generate_response_stream(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Generate a streaming response using Amazon Bedrock.
        Yields dictionaries with 'type' and 'content'.
        Types: thinking_start, thinking, thinking_end, text_start, text, text_end,
               tool_use_start, tool_use_delta, tool_use_end, usage_start, message_end
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, system_prompt, current_model, gen_config, tools=tools
            )
            logger.info(f"Streaming from model: {model_identifier}")
            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )

            current_block_type = "text"
            current_thinking_signature = None

            for event in response["body"]:
                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")

                if event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    current_block_type = block.get("type", "text")
                    if current_block_type == "thinking":
                        yield {"type": "thinking_start", "content": ""}
                    elif current_block_type == "text":
                        yield {"type": "text_start", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {
                            "type": "tool_use_start",
                            "content": "",
                            "data": {"id": block.get("id", ""), "name": block.get("name", "")},
                        }

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")
                    if delta_type == "thinking_delta":
                        if delta.get("thinking"):
                            yield {"type": "thinking", "content": delta["thinking"]}
                    elif delta_type == "signature_delta":
                        current_thinking_signature = (current_thinking_signature or "") + delta.get("signature", "")
                    elif delta_type == "text_delta":
                        if delta.get("text"):
                            yield {"type": "text", "content": delta["text"]}
                    elif delta_type == "input_json_delta":
                        if delta.get("partial_json"):
                            yield {"type": "tool_use_delta", "content": delta["partial_json"]}

                elif event_type == "content_block_stop":
                    if current_block_type == "thinking":
                        yield {"type": "thinking_end", "content": "", "signature": current_thinking_signature}
                        current_thinking_signature = None
                    elif current_block_type == "text":
                        yield {"type": "text_end", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {"type": "tool_use_end", "content": ""}

                elif event_type == "message_start":
                    msg_usage = chunk.get("message", {}).get("usage", {})
                    if msg_usage:
                        yield {"type": "usage_start", "content": "", "usage": msg_usage}

                elif event_type == "message_delta":
                    yield {
                        "type": "message_end",
                        "content": "",
                        "usage": chunk.get("usage", {}),
                        "stop_reason": chunk.get("delta", {}).get("stop_reason"),
                    }

        except ClientError as e:
            self._raise_client_error(e, "Streaming error")
        except BotoCoreError as e:
            raise BedrockError(f"Streaming connection error: {e}")


class ChunkAssembler:
    """Turn Bedrock stream chunks into fragments.

    Thinking deltas are buffered into one thought fragment per block so the
    signature stays with its text; tool input JSON is buffered until the
    block ends.
    """

    def __init__(self):
        self._thinking: List[str] = []
        self._tool: Optional[Dict[str, Any]] = None
        self._tool_json: List[str] = []
        self._usage: Dict[str, Any] = {}

    def feed(self, chunk: Dict[str, Any]) -> List[Fragment]:
        chunk_type = chunk.get("type", "")
        content = chunk.get("content", "")

        if chunk_type == "thinking_start":
            self._thinking = []
        elif chunk_type == "thinking":
            self._thinking.append(content)
        elif chunk_type == "thinking_end":
            return [Fragment(fragments.THOUGHT, text="".join(self._thinking), signature=chunk.get("signature"))]
        elif chunk_type == "text":
            return [fragments.text(content)]
        elif chunk_type == "tool_use_start":
            self._tool = chunk.get("data", {})
            self._tool_json = []
        elif chunk_type == "tool_use_delta":
            self._tool_json.append(content)
        elif chunk_type == "tool_use_end":
            if self._tool is None:
                raise MalformedFragmentError("tool_use_end without a matching tool_use_start")
            raw = "".join(self._tool_json).strip()
            try:
                args = json.loads(raw) if raw else {}
            except json.JSONDecodeError as e:
                raise MalformedFragmentError(
                    f"Invalid JSON arguments for tool {self._tool.get('name', '?')}: {e}"
                )
            tool, self._tool = self._tool, None
            return [fragments.function_call(tool.get("name", ""), args, tool.get("id") or None)]
        elif chunk_type == "usage_start":
            self._usage.update(chunk.get("usage") or {})
        elif chunk_type == "message_end":
            self._usage.update(chunk.get("usage") or {})
            return [
                Fragment(fragments.USAGE, usage=dict(self._usage)),
                fragments.done(chunk.get("stop_reason")),
            ]
        return []


class BedrockStreamSource(ContentStreamSource):
    """Content stream source backed by BedrockService.

    The blocking boto3 stream runs in a producer thread feeding a queue.
    Retryable failures are retried with exponential backoff, but only while
    nothing has been yielded yet; after that a failure ends the turn.
    """

    def __init__(
        self,
        service: BedrockService,
        config: Optional[GenerationConfig] = None,
        settings: Optional[AppConfig] = None,
    ):
        self.service = service
        self.config = config or GenerationConfig.from_model_config()
        settings = settings or app_config
        self.max_retries = settings.stream_max_retries
        self.retry_backoff = settings.stream_retry_backoff

    async def open_stream(self, payload: RequestPayload, cancel_token: Optional[CancelToken] = None) -> AsyncIterator[Fragment]:
        token = cancel_token or CancelToken()
        attempt = 0
        while True:
            attempt += 1
            yielded = False
            try:
                async for fragment in self._stream_once(payload, token):
                    yielded = True
                    yield fragment
                return
            except BedrockError as e:
                if yielded or token.is_cancelled or attempt > self.max_retries or not is_retryable(e):
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(f"Stream attempt {attempt} failed ({e}), retrying in {delay}s")
                if await token.wait_async(delay):
                    raise CancellationError(token.reason or "Cancelled during retry backoff")

    async def _stream_once(self, payload: RequestPayload, token: CancelToken) -> AsyncIterator[Fragment]:
        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding chunks to the queue."""
            try:
                for c in self.service.generate_response_stream(
                    messages=payload.messages,
                    system_prompt=payload.system,
                    model_id=payload.model_id,
                    config=self.config,
                    tools=payload.tools or None,
                ):
                    if stop.is_set() or token.is_cancelled:
                        break
                    chunk_queue.put(c)
                chunk_queue.put(None)  # sentinel: stream complete
            except Exception as exc:
                chunk_queue.put(exc)

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_running_loop()
        assembler = ChunkAssembler()
        try:
            while True:
                chunk = await loop.run_in_executor(None, chunk_queue.get)
                if chunk is None:
                    break
                if isinstance(chunk, BedrockError):
                    raise chunk
                if isinstance(chunk, Exception):
                    raise BedrockError(f"Streaming error: {chunk}") from chunk
                for fragment in assembler.feed(chunk):
                    yield fragment
        finally:
            stop.set()
