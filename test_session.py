"""
Tests for Bedrock-backed session wiring and confirmer selection.
"""

import logging
from types import SimpleNamespace

from agent.confirmation import AutoApproveConfirmer, ConsoleConfirmer, build_confirmer
from agent.continuation import ContinuationController
from agent.preview import PreviewStreamSource
from agent.session import create_session
from bedrock_service import BedrockStreamSource
from config import AppConfig, setup_logging
from tools.registry import ToolRegistry


class FakeService:
    model_id = "us.anthropic.claude-haiku-4-5-20251001-v1:0"

    def generate_response(self, **kwargs):
        return SimpleNamespace(content='{"next_speaker": "user"}')


def test_build_confirmer_follows_auto_approve_setting():
    assert isinstance(build_confirmer(AppConfig(auto_approve_commands=True)), AutoApproveConfirmer)
    assert isinstance(build_confirmer(AppConfig(auto_approve_commands=False)), ConsoleConfirmer)


def test_create_session_wires_bedrock_transport():
    registry = ToolRegistry()
    registry.register_function("noop", lambda: None)
    config = AppConfig(next_speaker_check_enabled=True, preview_api_call_enabled=False,
                       auto_approve_commands=True)
    service = FakeService()

    controller = create_session(registry, system_prompt="sys", service=service, config=config)

    assert isinstance(controller, ContinuationController)
    assert isinstance(controller.client.source, BedrockStreamSource)
    assert controller.client.source.service is service
    assert controller.client.model_id == service.model_id
    assert controller.client.system_prompt == "sys"
    assert isinstance(controller.scheduler.confirmer, AutoApproveConfirmer)
    assert controller.next_speaker.service is service


def test_create_session_in_preview_mode_uses_preview_source():
    config = AppConfig(preview_api_call_enabled=True, next_speaker_check_enabled=False)
    controller = create_session(ToolRegistry(), service=FakeService(), config=config)

    assert isinstance(controller.client.source, PreviewStreamSource)
    assert controller.next_speaker is None


def test_setup_logging_uses_configured_file_and_level(monkeypatch):
    captured = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))

    setup_logging(AppConfig(log_file="runtime.log", log_level="debug"))

    assert captured["filename"] == "runtime.log"
    assert captured["level"] == logging.DEBUG
    assert "%(name)s" in captured["format"]
