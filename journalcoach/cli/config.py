"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag (or JOURNALCOACH_CONFIG_PATH for the server)
2. ./journalcoach.yaml (working directory)
3. ~/.journalcoach/config.yaml (user home)

Environment variables override YAML: JOURNALCOACH_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file exists, defaults plus env overrides are used.
"""

import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, model_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

DEFAULT_MODEL = "claude-sonnet-4-20250514"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure.

    Args:
        data: Dict, list, or scalar value to process.

    Returns:
        Same structure with all string values resolved.
    """
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class VerificationMode(str, Enum):
    """Whether queue callbacks must carry a valid signature.

    Chosen once at startup; never inferred per request.
    """

    ENFORCED = "enforced"
    DISABLED = "disabled"


class ServerConfig(BaseModel):
    """Configuration for the API server process."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    allowed_origins: list[str] = []


class PipelineConfig(BaseModel):
    """Timing and limits for the claim and notification passes."""

    notification_delay_seconds: int = 30
    stale_claim_seconds: int = 600
    max_claim_attempts: int = 3
    claim_concurrency: int = 4
    stream_flush_seconds: float = 1.0
    stream_flush_chars: int = 400
    journal_context_limit: int = 5
    event_after_window_minutes: int = 30
    max_subscriptions_per_user: int = 5
    checkin_journal_days: int = 7
    checkin_journal_limit: int = 5
    checkin_history_days: int = 3
    checkin_history_limit: int = 10

    @model_validator(mode="after")
    def positive_limits(self) -> "PipelineConfig":
        """Reject limits that would disable the pipeline silently."""
        if self.max_claim_attempts < 1:
            raise ValueError("max_claim_attempts must be at least 1")
        if self.claim_concurrency < 1:
            raise ValueError("claim_concurrency must be at least 1")
        if self.notification_delay_seconds < 0:
            raise ValueError("notification_delay_seconds must not be negative")
        return self


class PushConfig(BaseModel):
    """VAPID credentials for web push."""

    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_subject: str = "mailto:admin@example.com"

    @property
    def is_configured(self) -> bool:
        """True when both VAPID keys are present."""
        return bool(self.vapid_public_key and self.vapid_private_key)


class QueueConfig(BaseModel):
    """External task queue (QStash-compatible) publishing and callback checks."""

    token: str = ""
    base_url: str = "https://qstash.upstash.io"
    callback_base_url: str = ""
    retries: int = 3
    current_signing_key: str = ""
    next_signing_key: str = ""
    verification: VerificationMode = VerificationMode.ENFORCED

    @property
    def is_configured(self) -> bool:
        """True when a publish token is present."""
        return bool(self.token)

    @property
    def signing_keys(self) -> list[str]:
        """Configured signing keys, current first."""
        return [k for k in (self.current_signing_key, self.next_signing_key) if k]


class LLMConfig(BaseModel):
    """Language-model provider settings."""

    model: str = ""
    chat_max_tokens: int = 1024
    job_max_tokens: int = 4096
    tool_max_tokens: int = 8192
    timeout_seconds: float = 60.0

    @model_validator(mode="after")
    def default_model(self) -> "LLMConfig":
        """Fall back to ANTHROPIC_MODEL, then the default model."""
        if not self.model:
            self.model = os.environ.get("ANTHROPIC_MODEL", DEFAULT_MODEL)
        return self


class CronConfig(BaseModel):
    """Shared secret expected as `Authorization: Bearer <secret>` on cron endpoints."""

    secret: str = ""


class CoachConfig(BaseModel):
    """Top-level configuration for the journalcoach service."""

    server: ServerConfig = ServerConfig()
    pipeline: PipelineConfig = PipelineConfig()
    push: PushConfig = PushConfig()
    queue: QueueConfig = QueueConfig()
    llm: LLMConfig = LLMConfig()
    cron: CronConfig = CronConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "journalcoach.yaml",
        Path.cwd() / "journalcoach.yml",
        Path.home() / ".journalcoach" / "config.yaml",
        Path.home() / ".journalcoach" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply JOURNALCOACH_<SECTION>_<KEY> env var overrides to config data.

    For example, ``JOURNALCOACH_PUSH_VAPID_PUBLIC_KEY`` maps to section
    ``push``, field ``vapid_public_key``. Values that look like integers,
    floats or booleans are coerced; everything else stays a string.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "JOURNALCOACH_"
    known_sections = sorted(
        CoachConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            data[matched_section][matched_field] = _coerce(value)
    return data


def _coerce(value: str) -> Any:
    """Coerce an env var string to int, float or bool when it looks like one."""
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def load_config(config_path: str | None = None) -> CoachConfig:
    """Load journalcoach configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.journalcoach/).

    Returns:
        Parsed and validated CoachConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    raw_data: dict[str, Any] = {}
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return CoachConfig(**data)


def validate_startup_config(config: CoachConfig) -> list[str]:
    """Check settings that must be consistent before the server starts.

    Args:
        config: Loaded configuration.

    Returns:
        List of warnings for degraded-but-valid setups.

    Raises:
        ValueError: If callback verification is enforced with no signing keys
            while the queue is configured.
    """
    warnings: list[str] = []
    queue = config.queue
    if queue.is_configured and queue.verification == VerificationMode.ENFORCED:
        if not queue.signing_keys:
            raise ValueError(
                "queue.verification is 'enforced' but no signing keys are set. "
                "Set queue.current_signing_key or switch verification to 'disabled'."
            )
    if queue.verification == VerificationMode.DISABLED:
        warnings.append("Queue callback signature verification is DISABLED.")
    if not config.push.is_configured:
        warnings.append("VAPID keys not configured; push notifications are unsupported.")
    if not config.cron.secret:
        warnings.append("cron.secret not configured; cron endpoints will refuse to run.")
    return warnings
