"""
Next-speaker check: after a turn ends without tool calls, decide whether the
model intended to keep going or is waiting for the user.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from config import AppConfig, app_config

from .chat import message_text

logger = logging.getLogger(__name__)

USER = "user"
MODEL = "model"

NEXT_SPEAKER_SYSTEM = """Analyze only the content and structure of the assistant's immediately preceding response (the last assistant message). Decide who should speak next. Return ONLY valid JSON:
{"reasoning": "<one sentence>", "next_speaker": "user"|"model"}

**Rules, in order**:
1. **model** when the response explicitly says what it will do next ("Next, I will...", "Now I'll...") or ends abruptly as if cut off mid-thought.
2. **user** when the response ends with a direct question to the user.
3. **user** when the response completed a thought or task and is waiting for the user.

Return ONLY the JSON object, no explanation."""

CONTINUE_DIRECTIVE = "Please continue."

_COMPLETION_PHRASES = (
    "task is complete", "task complete", "completed successfully",
    "all done", "finished", "implementation is complete",
    "should be working now", "fixed the issue", "issue is resolved",
    "changes have been applied", "successfully implemented",
)
_FOLLOWUP_PHRASES = (
    "let me know if", "feel free to", "if you need any", "anything else",
    "further assistance", "additional help", "would you like",
)
_INTENT_PHRASES = (
    "next, i will", "next, i'll", "now i will", "now i'll", "let me now",
    "i will now", "i'll now", "next i will", "next i'll",
)


def _extract_json(text: str) -> Dict[str, Any]:
    """First JSON object in a model reply, tolerating markdown fences and chatter."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1].rsplit("```", 1)[0].strip()
    brace_start = text.find("{")
    if brace_start >= 0:
        depth, end = 0, brace_start
        for i in range(brace_start, len(text)):
            if text[i] == "{":
                depth += 1
            elif text[i] == "}":
                depth -= 1
            if depth == 0:
                end = i + 1
                break
        text = text[brace_start:end]
    return json.loads(text)


def heuristic_next_speaker(text: str) -> str:
    """Fallback when the auxiliary model is unavailable."""
    stripped = (text or "").strip()
    lower = stripped.lower()
    if not stripped:
        return MODEL
    if stripped.endswith("?"):
        return USER
    if any(p in lower for p in _COMPLETION_PHRASES) or any(p in lower for p in _FOLLOWUP_PHRASES):
        return USER
    if any(lower.rstrip(".!: ").endswith(p) or p in lower[-120:] for p in _INTENT_PHRASES):
        return MODEL
    return USER


class NextSpeakerChecker:
    """Asks a small model who should speak next.

    ``service`` needs a blocking ``generate_response(messages, system_prompt,
    model_id, config)`` returning an object with ``.content``; without one the
    heuristic decides.
    """

    def __init__(self, service: Any = None, config: Optional[AppConfig] = None):
        self.service = service
        self.config = config or app_config

    async def check(self, messages: List[Dict[str, Any]]) -> Optional[str]:
        """Return "model", "user", or None when no check applies."""
        last = messages[-1] if messages else None
        if last is None or last.get("role") != "assistant":
            return None
        content = last.get("content")
        if isinstance(content, list) and any(
            isinstance(b, dict) and b.get("type") == "tool_use" for b in content
        ):
            # Tool calls already drive the next turn
            return None
        text = message_text(last)
        if not text.strip():
            return MODEL

        if self.service is None:
            return heuristic_next_speaker(text)

        try:
            from bedrock_service import GenerationConfig
            gen_config = GenerationConfig(max_tokens=200, enable_thinking=False)
            transcript = "\n\n".join(
                f"[{m.get('role', '?')}]: {message_text(m)[:2000]}" for m in messages[-6:]
                if message_text(m).strip()
            )
            resp = await asyncio.to_thread(
                self.service.generate_response,
                messages=[{
                    "role": "user",
                    "content": (
                        f"Conversation (most recent last):\n{transcript}\n\n"
                        "Who should speak next after the last assistant message?"
                    ),
                }],
                system_prompt=NEXT_SPEAKER_SYSTEM,
                model_id=self.config.next_speaker_model,
                config=gen_config,
            )
            result = _extract_json(resp.content)
            speaker = result.get("next_speaker")
            if speaker not in (USER, MODEL):
                raise ValueError(f"unexpected next_speaker {speaker!r}")
            logger.info(f"Next speaker: {speaker} ({result.get('reasoning', '')[:120]})")
            return speaker
        except Exception as e:
            logger.warning(f"Next-speaker check failed ({e}), using fallback")
            return heuristic_next_speaker(text)
