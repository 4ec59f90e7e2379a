"""
Configuration module for Bedrock Orchestrator.
Handles environment variables, model specifications, and agent policy settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


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
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    throughput_mode: str = os.getenv("THROUGHPUT_MODE", "cross-region")


@dataclass
class AgentConfig:
    """Policy knobs for the conversation loop and its collaborators"""
    # Round-trip bound per user message
    max_loops: int = int(os.getenv("MAX_LOOPS", "15"))
    # Prior messages sent with each request
    max_history_messages: int = int(os.getenv("MAX_HISTORY_MESSAGES", "50"))

    # Activity timeout for the LLM stream, re-armed on every event (seconds)
    stream_timeout: float = float(os.getenv("STREAM_TIMEOUT", "120"))
    # Upper bound on a single tool body (seconds, 0 disables)
    tool_timeout: float = float(os.getenv("TOOL_TIMEOUT", "60"))

    # Streaming tool-argument parse bounds
    max_tool_args_chars: int = int(os.getenv("MAX_TOOL_ARGS_CHARS", "262144"))
    max_parse_attempts: int = int(os.getenv("MAX_PARSE_ATTEMPTS", "256"))

    # Tool output cap before it enters the thread
    max_tool_result_chars: int = int(os.getenv("MAX_TOOL_RESULT_CHARS", "15000"))

    # Checkpoints retained per thread (oldest evicted first)
    max_checkpoints: int = int(os.getenv("MAX_CHECKPOINTS", "200"))

    # Compression thresholds (fraction of the context window)
    compress_truncate_at: float = float(os.getenv("COMPRESS_TRUNCATE_AT", "0.5"))
    compress_window_at: float = float(os.getenv("COMPRESS_WINDOW_AT", "0.7"))
    compress_deep_at: float = float(os.getenv("COMPRESS_DEEP_AT", "0.85"))
    handoff_at: float = float(os.getenv("HANDOFF_AT", "1.0"))
    keep_recent_turns: int = int(os.getenv("KEEP_RECENT_TURNS", "4"))
    deep_keep_turns: int = int(os.getenv("DEEP_KEEP_TURNS", "2"))
    truncate_chars: int = int(os.getenv("TRUNCATE_CHARS", "2000"))

    # Per-category auto-approve for the approval gate
    auto_approve_edits: bool = _env_bool("AUTO_APPROVE_EDITS")
    auto_approve_terminal: bool = _env_bool("AUTO_APPROVE_TERMINAL")
    auto_approve_dangerous: bool = _env_bool("AUTO_APPROVE_DANGEROUS")


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Bedrock Orchestrator"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "bedrock_orchestrator.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    sessions_dir: str = os.getenv(
        "SESSIONS_DIR",
        os.path.join(os.path.expanduser("~"), ".bedrock-orchestrator", "threads"),
    )


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only models with tool_use support are listed; the agent loop depends on it.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-6-v1",
        "base_id": "anthropic.claude-opus-4-6-v1",
        "name": "Claude Opus 4.6",
        "context_window": 200000,
        "max_output_tokens": 128000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": True,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
agent_config = AgentConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_name(model_id: str) -> str:
    """Get the display name for a model ID"""
    model = get_model_by_id(model_id)
    return model["name"] if model else model_id


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown IDs get a minimal
    fallback dict; callers use .get(key, default) for anything they need."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 4096,
        "requires_profile": False,
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", 200000)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default AWS credential chain"
