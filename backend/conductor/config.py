"""
Conductor Configuration
配置

Dataclass configuration with environment overrides.

Environment variables:
- CONDUCTOR_PROVIDER              anthropic | openai
- CONDUCTOR_MODEL                 default model for agents without one
- CONDUCTOR_MAX_TOKENS
- CONDUCTOR_MAX_TOOL_ROUND_TRIPS
- CONDUCTOR_MAX_ATTEMPTS
- CONDUCTOR_BACKOFF_INITIAL / CONDUCTOR_BACKOFF_MAX
- CONDUCTOR_TOOL_TIMEOUT
- CONDUCTOR_MAX_CONCURRENT        subtasks dispatched at once per task tree
- CONDUCTOR_STORE_DIR             JSON store directory (unset = in-memory)
- CONDUCTOR_AGENTS_FILE           JSON agent definitions
- CONDUCTOR_LOG_LEVEL
- ANTHROPIC_API_KEY / ANTHROPIC_BASE_URL
- OPENAI_API_KEY / OPENAI_BASE_URL
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Optional

from .core.constants import (
    BACKOFF_INITIAL_SECONDS,
    BACKOFF_JITTER_RATIO,
    BACKOFF_MAX_SECONDS,
    DEFAULT_MODEL,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    MAX_CONCURRENT_SUBTASKS,
    MAX_OUTPUT_TOKENS,
    MAX_RUN_ATTEMPTS,
    MAX_TOOL_ROUND_TRIPS,
)

logger = logging.getLogger(__name__)


PROVIDERS = ("anthropic", "openai")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class ConductorConfig:
    """Conductor configuration"""
    # Model provider
    provider: str = "anthropic"
    default_model: str = DEFAULT_MODEL
    max_tokens: int = MAX_OUTPUT_TOKENS
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    # Execution Loop
    max_tool_round_trips: int = MAX_TOOL_ROUND_TRIPS
    max_attempts: int = MAX_RUN_ATTEMPTS
    backoff_initial: float = BACKOFF_INITIAL_SECONDS
    backoff_max: float = BACKOFF_MAX_SECONDS
    backoff_jitter: float = BACKOFF_JITTER_RATIO

    # Tools
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS

    # Orchestrator
    max_concurrent_subtasks: int = MAX_CONCURRENT_SUBTASKS

    # Storage / agents
    store_dir: Optional[str] = None
    agents_file: Optional[str] = None

    log_level: str = "INFO"

    def __post_init__(self):
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown provider {self.provider!r}; expected one of {PROVIDERS}")
        if self.max_tool_round_trips < 0:
            raise ValueError("max_tool_round_trips must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.max_concurrent_subtasks < 1:
            raise ValueError("max_concurrent_subtasks must be >= 1")
        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be > 0")

    @classmethod
    def from_env(cls) -> "ConductorConfig":
        """Build configuration from environment variables"""
        provider = os.getenv("CONDUCTOR_PROVIDER", "anthropic").strip().lower()

        if provider == "openai":
            api_key = os.getenv("OPENAI_API_KEY")
            base_url = os.getenv("OPENAI_BASE_URL")
            default_model = os.getenv("CONDUCTOR_MODEL") or DEFAULT_OPENAI_MODEL
        else:
            api_key = os.getenv("ANTHROPIC_API_KEY")
            base_url = os.getenv("ANTHROPIC_BASE_URL")
            default_model = os.getenv("CONDUCTOR_MODEL") or DEFAULT_MODEL

        return cls(
            provider=provider,
            default_model=default_model,
            max_tokens=_env_int("CONDUCTOR_MAX_TOKENS", MAX_OUTPUT_TOKENS),
            api_key=api_key,
            base_url=base_url,
            max_tool_round_trips=_env_int("CONDUCTOR_MAX_TOOL_ROUND_TRIPS", MAX_TOOL_ROUND_TRIPS),
            max_attempts=_env_int("CONDUCTOR_MAX_ATTEMPTS", MAX_RUN_ATTEMPTS),
            backoff_initial=_env_float("CONDUCTOR_BACKOFF_INITIAL", BACKOFF_INITIAL_SECONDS),
            backoff_max=_env_float("CONDUCTOR_BACKOFF_MAX", BACKOFF_MAX_SECONDS),
            tool_timeout=_env_float("CONDUCTOR_TOOL_TIMEOUT", DEFAULT_TOOL_TIMEOUT_SECONDS),
            max_concurrent_subtasks=_env_int("CONDUCTOR_MAX_CONCURRENT", MAX_CONCURRENT_SUBTASKS),
            store_dir=os.getenv("CONDUCTOR_STORE_DIR") or None,
            agents_file=os.getenv("CONDUCTOR_AGENTS_FILE") or None,
            log_level=os.getenv("CONDUCTOR_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a basic log format for the service entry point"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
