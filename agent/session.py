"""
Wiring for an interactive session backed by Amazon Bedrock.
"""

import logging
from typing import Any, Optional

from rich.console import Console

from bedrock_service import BedrockService, BedrockStreamSource
from config import AppConfig, app_config, get_credentials_info
from tools.registry import ToolRegistry

from .allowlist import SessionAllowList
from .chat import ChatHistory, model_summarizer
from .client import AgentClient
from .confirmation import Confirmer, ConsoleModifier, Modifier, build_confirmer
from .continuation import ContinuationController
from .next_speaker import NextSpeakerChecker
from .scheduler import BatchObserver, ToolCallScheduler, UpdateObserver

logger = logging.getLogger(__name__)


def create_session(
    registry: ToolRegistry,
    system_prompt: Optional[str] = None,
    service: Optional[BedrockService] = None,
    confirmer: Optional[Confirmer] = None,
    modifier: Optional[Modifier] = None,
    on_update: Optional[UpdateObserver] = None,
    on_batch_complete: Optional[BatchObserver] = None,
    config: Optional[AppConfig] = None,
    console: Optional[Console] = None,
) -> ContinuationController:
    """Build a ContinuationController with Bedrock transport and console confirmation."""
    cfg = config or app_config
    service = service or BedrockService()
    client = AgentClient(
        source=BedrockStreamSource(service, settings=cfg),
        registry=registry,
        history=ChatHistory(),
        system_prompt=system_prompt,
        model_id=service.model_id,
        summarizer=model_summarizer(service, cfg.next_speaker_model),
        config=cfg,
    )
    scheduler = ToolCallScheduler(
        registry=registry,
        confirmer=confirmer or build_confirmer(cfg, console),
        allowlist=SessionAllowList(),
        modifier=modifier or ConsoleModifier(console),
        on_update=on_update,
        on_batch_complete=on_batch_complete,
    )
    next_speaker = NextSpeakerChecker(service, cfg) if cfg.next_speaker_check_enabled else None
    logger.info(f"Session created: model={service.model_id}, {len(registry)} tool(s). {get_credentials_info()}")
    return ContinuationController(client, scheduler, next_speaker, cfg)
