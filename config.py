"""
Configuration module for the agent runtime.
Handles environment variables, model specifications, and runtime settings.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

PREVIEW_FORMATS = ("summary", "json")


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "32000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    throughput_mode: str = os.getenv("THROUGHPUT_MODE", "cross-region")

    # Extended thinking settings
    enable_thinking: bool = os.getenv("ENABLE_THINKING", "true").lower() == "true"
    thinking_budget: int = int(os.getenv("THINKING_BUDGET", "16000"))


@dataclass
class AppConfig:
    """Runtime configuration for turns, scheduling and continuation"""
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "agent_runtime.log")
    # Upper bound on turns opened by a single user message (tool loops included)
    max_tool_iterations: int = int(os.getenv("MAX_TOOL_ITERATIONS", "100"))
    # Stream recovery settings
    stream_max_retries: int = int(os.getenv("STREAM_MAX_RETRIES", "3"))
    stream_retry_backoff: float = float(os.getenv("STREAM_RETRY_BACKOFF", "2"))
    # Consecutive "Please continue." turns allowed without new tool calls
    max_auto_continuations: int = int(os.getenv("MAX_AUTO_CONTINUATIONS", "1"))
    # Auxiliary next-speaker query after turns that end without tool calls
    next_speaker_check_enabled: bool = os.getenv("NEXT_SPEAKER_CHECK_ENABLED", "true").lower() == "true"
    next_speaker_model: str = os.getenv("NEXT_SPEAKER_MODEL", "us.anthropic.claude-haiku-4-5-20251001-v1:0")
    # YOLO mode: auto-approve every confirmation request
    auto_approve_commands: bool = os.getenv("AUTO_APPROVE_COMMANDS", "false").lower() == "true"
    # Default timeout for tools that declare none (0 disables)
    tool_timeout_seconds: float = float(os.getenv("TOOL_TIMEOUT_SECONDS", "0"))
    # History compression
    compression_threshold: float = float(os.getenv("COMPRESSION_THRESHOLD", "0.7"))
    compression_keep_recent: int = int(os.getenv("COMPRESSION_KEEP_RECENT", "6"))
    # Debug: print the request payload instead of sending it
    preview_api_call_enabled: bool = os.getenv("PREVIEW_API_CALL_ENABLED", "false").lower() == "true"
    preview_api_call_format: str = os.getenv("PREVIEW_API_CALL_FORMAT", "summary")

    def get_preview_format(self) -> str:
        fmt = (self.preview_api_call_format or "").strip().lower()
        if fmt not in PREVIEW_FORMATS:
            logging.getLogger(__name__).warning(
                f"Unknown PREVIEW_API_CALL_FORMAT {self.preview_api_call_format!r}, using 'summary'"
            )
            return "summary"
        return fmt


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 64000,
    },
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "base_id": "anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 32000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 32000,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the configuration for a model, with a fallback for unknown IDs."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "provider": "anthropic",
        "context_window": 200000,
        "max_output_tokens": 32000,
        "requires_profile": True,
        "supports_thinking": True,
        "thinking_max_budget": 32000,
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", 200000)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def supports_thinking(model_id: str) -> bool:
    """Check if model supports extended thinking"""
    return get_model_config(model_id).get("supports_thinking", False)


def get_thinking_max_budget(model_id: str) -> int:
    """Get maximum thinking budget for a model"""
    return get_model_config(model_id).get("thinking_max_budget", 0)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """Send log records to the configured file at the configured level."""
    cfg = config or app_config
    logging.basicConfig(
        filename=cfg.log_file,
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
