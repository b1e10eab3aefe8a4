"""
Conversation history for the agent: curation, repair and compression.
Messages use the Anthropic Messages format.
"""

import asyncio
import copy
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .events import ChatCompressionInfo

logger = logging.getLogger(__name__)

RECOVERED_RESULT = "(result unavailable; recovered from an interrupted exchange)"

Summarizer = Callable[[List[Dict[str, Any]]], Union[str, Awaitable[str]]]


def estimate_tokens(text: str) -> int:
    """Token estimate: ~3.5 chars per token for mixed English/code."""
    return max(1, int(len(text) / 3.5))


def _block_tokens(block: Any) -> int:
    if isinstance(block, str):
        return estimate_tokens(block)
    if isinstance(block, dict):
        total = 10  # overhead for block structure
        for key in ("text", "thinking", "content"):
            val = block.get(key, "")
            if isinstance(val, str):
                total += estimate_tokens(val)
            elif isinstance(val, list):
                total += sum(_block_tokens(b) for b in val)
        inp = block.get("input")
        if isinstance(inp, dict):
            total += estimate_tokens(json.dumps(inp, default=str))
        return total
    return 0


def message_tokens(msg: Dict[str, Any]) -> int:
    content = msg.get("content", "")
    if isinstance(content, str):
        return estimate_tokens(content) + 5
    if isinstance(content, list):
        return sum(_block_tokens(b) for b in content) + 5
    return 5


def message_text(msg: Dict[str, Any]) -> str:
    """Concatenated text blocks of a message"""
    content = msg.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(b.get("text", "") for b in content
                        if isinstance(b, dict) and b.get("type") == "text")
    return ""


def _as_blocks(content: Any) -> List[Any]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content or [])


def _tool_use_ids(msg: Dict[str, Any]) -> List[str]:
    content = msg.get("content")
    if not isinstance(content, list):
        return []
    return [b.get("id", "") for b in content
            if isinstance(b, dict) and b.get("type") == "tool_use" and b.get("id")]


def _has_tool_results(msg: Dict[str, Any]) -> bool:
    content = msg.get("content")
    return isinstance(content, list) and any(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    )


def heuristic_summary(messages: List[Dict[str, Any]]) -> str:
    """Fallback summary when no model is available."""
    summary_parts: List[str] = []
    tool_calls: Dict[str, int] = {}
    for msg in messages:
        role = msg.get("role", "?")
        content = msg.get("content", "")
        if isinstance(content, str):
            if len(content) > 20:
                summary_parts.append(f"{'User asked' if role == 'user' else 'Assistant replied'}: {content[:200]}")
            continue
        for block in content or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use":
                name = block.get("name", "?")
                tool_calls[name] = tool_calls.get(name, 0) + 1
            elif block.get("type") == "text" and len(block.get("text", "")) > 20:
                summary_parts.append(f"{role.capitalize()}: {block['text'][:200]}")

    lines = [f"[Summary of {len(messages)} earlier messages]"]
    if tool_calls:
        lines.append("Tools used: " + ", ".join(
            f"{n}×{c}" for n, c in sorted(tool_calls.items(), key=lambda x: -x[1])))
    lines.extend(summary_parts[-6:])
    return "\n".join(lines)


class ChatHistory:
    """Ordered list of user/assistant messages for one session."""

    def __init__(self, messages: Optional[List[Dict[str, Any]]] = None):
        self.messages: List[Dict[str, Any]] = list(messages or [])
        # "input", "continuation" or "client" for each user message added
        self.turn_kinds: List[str] = []

    def __len__(self) -> int:
        return len(self.messages)

    def add_user(self, content: Any, kind: str = "input") -> None:
        """Append user content, merging into a trailing user message."""
        blocks = _as_blocks(content)
        if not blocks:
            return
        self.turn_kinds.append(kind)
        if self.messages and self.messages[-1].get("role") == "user":
            last = self.messages[-1]
            last["content"] = _as_blocks(last.get("content")) + blocks
            return
        self.messages.append({"role": "user", "content": blocks})

    def add_model(self, content: List[Dict[str, Any]]) -> None:
        if not content:
            return
        self.messages.append({"role": "assistant", "content": list(content)})

    def add_client_exchange(self, tool_uses: List[Dict[str, Any]], results: List[Dict[str, Any]]) -> None:
        """Record tool calls the client ran itself, as a matched tool_use/tool_result pair."""
        if not tool_uses:
            return
        # The model only sees assistant turns that follow a user turn
        if not self.messages or self.messages[-1].get("role") == "assistant":
            self.messages.append({"role": "user", "content": [{"type": "text", "text": "(client action)"}]})
        self.add_model(tool_uses)
        self.add_user(results, kind="client")

    # ------------------------------------------------------------------
    # Curation and repair
    # ------------------------------------------------------------------

    def curated(self) -> List[Dict[str, Any]]:
        """Deep copy that is valid to send: no empty assistant turns and
        every tool_use answered by a tool_result in the next message."""
        messages = [copy.deepcopy(m) for m in self.messages
                    if not (m.get("role") == "assistant" and not m.get("content"))]
        return self.repair(messages)

    @staticmethod
    def repair(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Answer orphaned tool_use blocks with placeholder error results."""
        i = 0
        while i < len(messages):
            ids = _tool_use_ids(messages[i]) if messages[i].get("role") == "assistant" else []
            if not ids:
                i += 1
                continue
            nxt = messages[i + 1] if i + 1 < len(messages) else None
            if nxt is None or nxt.get("role") != "user":
                placeholder = {"role": "user", "content": []}
                messages.insert(i + 1, placeholder)
                nxt = placeholder
            content = _as_blocks(nxt.get("content"))
            answered = {b.get("tool_use_id") for b in content
                        if isinstance(b, dict) and b.get("type") == "tool_result"}
            missing = [tid for tid in ids if tid not in answered]
            if missing:
                dummy = [{"type": "tool_result", "tool_use_id": tid,
                          "content": RECOVERED_RESULT, "is_error": True} for tid in missing]
                # tool_result blocks must lead the user message
                nxt["content"] = dummy + content
                logger.warning(f"Repaired {len(missing)} orphaned tool_use block(s) at message {i}")
            i += 2
        return messages

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def estimate_tokens(self) -> int:
        return sum(message_tokens(m) for m in self.messages)

    def _split_index(self, keep_recent: int) -> int:
        """Index of the first kept message: a plain user message, so no
        tool_use/tool_result pair is split."""
        start = max(0, len(self.messages) - keep_recent)
        for idx in range(start, 0, -1):
            msg = self.messages[idx]
            if msg.get("role") == "user" and not _has_tool_results(msg):
                return idx
        return 0

    async def compress(self, summarize: Optional[Summarizer] = None,
                       keep_recent: int = 6) -> Optional[ChatCompressionInfo]:
        """Replace the oldest messages with a summary.

        Returns the before/after token estimates, or None when there is
        nothing that can be compressed.
        """
        split = self._split_index(keep_recent)
        if split <= 0:
            return None
        before = self.estimate_tokens()
        old = self.messages[:split]

        summary = ""
        if summarize is not None:
            try:
                ret = summarize(old)
                summary = await ret if inspect.isawaitable(ret) else ret
            except Exception as e:
                logger.warning(f"Summarizer failed ({e}), using heuristic summary")
        if not summary or not summary.strip():
            summary = heuristic_summary(old)

        kept = self.messages[split:]
        self.messages = [
            {"role": "user", "content": [{"type": "text", "text": f"[Running summary of earlier conversation]\n{summary.strip()}"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "Understood. Continuing from the summary."}]},
        ] + kept
        after = self.estimate_tokens()
        logger.info(f"Compressed {len(old)} messages: ~{before} -> ~{after} tokens")
        return ChatCompressionInfo(before=before, after=after)


SUMMARY_SYSTEM = (
    "You are a conversation summarizer for a tool-using assistant. "
    "Produce a clear, structured summary preserving all technical details. "
    "Keep the summary under 600 words."
)


def _transcript(messages: List[Dict[str, Any]]) -> str:
    text_parts = []
    for msg in messages:
        role = msg.get("role", "?")
        content = msg.get("content", "")
        if isinstance(content, str):
            text_parts.append(f"[{role}]: {content[:500]}")
            continue
        for b in content or []:
            if not isinstance(b, dict):
                continue
            if b.get("type") == "text":
                text_parts.append(f"[{role}]: {b.get('text', '')[:500]}")
            elif b.get("type") == "tool_use":
                text_parts.append(f"[tool]: {b.get('name', '?')}({json.dumps(b.get('input', {}), default=str)[:200]})")
            elif b.get("type") == "tool_result":
                text_parts.append(f"[result]: {str(b.get('content', ''))[:300]}")
    conversation = "\n".join(text_parts)
    if len(conversation) > 30000:
        conversation = conversation[:15000] + "\n...\n" + conversation[-15000:]
    return conversation


def model_summarizer(service: Any, model_id: Optional[str] = None) -> Summarizer:
    """Summarizer backed by a blocking ``service.generate_response``, run in a worker thread."""

    async def _summarize(messages: List[Dict[str, Any]]) -> str:
        from bedrock_service import GenerationConfig
        summary_config = GenerationConfig(max_tokens=2000, enable_thinking=False)
        result = await asyncio.to_thread(
            service.generate_response,
            messages=[{
                "role": "user",
                "content": (
                    "Summarize this conversation concisely. Preserve: (1) the task goal, "
                    "(2) key decisions, (3) tools that were called and their results, "
                    "(4) any unresolved issues or next steps.\n\n"
                    f"Conversation:\n{_transcript(messages)}"
                ),
            }],
            system_prompt=SUMMARY_SYSTEM,
            model_id=model_id,
            config=summary_config,
        )
        logger.info(f"Model summarized {len(messages)} messages into {len(result.content)} chars")
        return result.content

    return _summarize
