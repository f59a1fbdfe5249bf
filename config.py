"""
Configuration module for Codex Runtime.
Handles environment variables, model specifications, and engine settings.
"""

import os
import threading
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


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
    provider: str = os.getenv("LLM_PROVIDER", "bedrock")
    model_id: str = os.getenv("MODEL_ID", "us.anthropic.claude-sonnet-4-20250514-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    throughput_mode: str = os.getenv("THROUGHPUT_MODE", "cross-region")
    anthropic_base_url: str = os.getenv("ANTHROPIC_BASE_URL", "")


@dataclass
class AppConfig:
    """Engine configuration"""
    title: str = "Codex Runtime"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "codex_runtime.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    # Turn loop
    max_turns: int = int(os.getenv("MAX_TURNS", "50"))
    # Compaction: trigger at this share of the model's input limit
    compaction_threshold_percent: float = float(os.getenv("COMPACTION_THRESHOLD_PERCENT", "95"))
    prune_minimum_tokens: int = int(os.getenv("PRUNE_MINIMUM_TOKENS", "20000"))
    prune_protect_tokens: int = int(os.getenv("PRUNE_PROTECT_TOKENS", "40000"))
    keep_recent_tokens: int = int(os.getenv("KEEP_RECENT_TOKENS", "20000"))
    reserved_output_tokens: int = int(os.getenv("RESERVED_OUTPUT_TOKENS", "32000"))
    summary_max_tokens: int = int(os.getenv("SUMMARY_MAX_TOKENS", "2048"))
    # Subagents
    max_agent_depth: int = int(os.getenv("MAX_AGENT_DEPTH", "3"))
    default_model: str = os.getenv("DEFAULT_MODEL", "claude-sonnet-4-20250514")
    # Background tasks
    tasks_dir: str = os.getenv("TASKS_DIR", os.path.join(os.path.expanduser("~"), ".codex-runtime", "tasks"))
    max_task_output_bytes: int = int(os.getenv("MAX_TASK_OUTPUT_BYTES", str(10 * 1024 * 1024)))
    max_concurrent_tasks: int = int(os.getenv("MAX_CONCURRENT_TASKS", "10"))
    task_retention_hours: float = float(os.getenv("TASK_RETENTION_HOURS", "24"))
    status_interval: float = float(os.getenv("STATUS_INTERVAL", "1.0"))
    # Permissions: default | plan | yolo | deny
    permission_mode: str = os.getenv("PERMISSION_MODE", "default")
    default_permission: str = os.getenv("DEFAULT_PERMISSION", "ask")
    settings_path: str = os.getenv("SETTINGS_PATH", os.path.join(".codex", "settings.json"))
    permission_allow: str = os.getenv("PERMISSION_ALLOW", "")
    permission_deny: str = os.getenv("PERMISSION_DENY", "")
    # Deny reads and writes of .env files, secrets and ssh/aws credentials
    common_deny_rules: bool = os.getenv("COMMON_DENY_RULES", "true").lower() == "true"
    # Tools
    bash_timeout: int = int(os.getenv("BASH_TIMEOUT", "120"))


# ============================================================
# Model Specifications
# Anthropic Claude models, addressable either through Bedrock
# (inference-profile ids) or the Anthropic API (plain ids).
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-6-v1",
        "base_id": "anthropic.claude-opus-4-6-v1",
        "name": "Claude Opus 4.6",
        "context_window": 200000,
        "max_output_tokens": 128000,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "claude-sonnet-4-20250514",
        "base_id": "claude-sonnet-4-20250514",
        "name": "Claude Sonnet 4 (Anthropic API)",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "claude-opus-4-6",
        "base_id": "claude-opus-4-6",
        "name": "Claude Opus 4.6 (Anthropic API)",
        "context_window": 200000,
        "max_output_tokens": 128000,
    },
]

_FALLBACK_MODEL: Dict[str, Any] = {
    "context_window": 200000,
    "max_output_tokens": 8192,
}


class ModelCatalog:
    """Read-heavy model metadata cache shared by every executor in a runtime.

    Lookups and registrations are guarded by a lock so subagents and
    background tasks running on other threads see a consistent table.
    """

    def __init__(self, models: Optional[List[Dict[str, Any]]] = None,
                 reserved_output_tokens: int = 32000):
        self._lock = threading.Lock()
        self._models: Dict[str, Dict[str, Any]] = {}
        self.reserved_output_tokens = reserved_output_tokens
        for model in (models if models is not None else AVAILABLE_MODELS):
            self._index(model)

    def _index(self, model: Dict[str, Any]) -> None:
        self._models[model["id"]] = model
        if model.get("base_id"):
            self._models.setdefault(model["base_id"], model)

    def register(self, model: Dict[str, Any]) -> None:
        """Add or replace a model entry (e.g. discovered from a provider)."""
        with self._lock:
            self._index(dict(model))

    def get(self, model_id: str) -> Dict[str, Any]:
        """Return the model entry, or a fallback dict for unknown ids."""
        with self._lock:
            model = self._models.get(model_id)
        if model:
            return model
        return dict(_FALLBACK_MODEL, id=model_id, name=model_id)

    def get_model_name(self, model_id: str) -> str:
        return self.get(model_id).get("name", model_id)

    def context_window(self, model_id: str) -> int:
        return self.get(model_id).get("context_window", 200000)

    def max_output_tokens(self, model_id: str) -> int:
        return self.get(model_id).get("max_output_tokens", 8192)

    def input_limit(self, model_id: str) -> int:
        """Usable input tokens: context window minus the output reservation."""
        window = self.context_window(model_id)
        reserved = min(self.reserved_output_tokens, self.max_output_tokens(model_id))
        return max(window - reserved, 0)


# Global config instances used as CLI defaults
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
