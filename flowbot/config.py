"""Configuration container populated from environment variables.

There is no process-wide settings instance: :func:`load_settings` builds a
:class:`Settings` object which the caller hands to :func:`flowbot.main.create_app`
and, through it, to the connectors, the step executor and the scheduler.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from dataclasses import replace
from pathlib import Path
from typing import Any
from typing import Optional

from dotenv import load_dotenv


def _truthy(value: str | None) -> bool:  # noqa: D401 - small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from exc


@dataclass
class Settings:  # noqa: D401 - simple data container
    """Settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool = False
    log_level: str = "INFO"

    # Database ---------------------------------------------------------
    database_url: str = "sqlite:///./flowbot.db"

    # Text generation --------------------------------------------------
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "anthropic/claude-3.5-sonnet"
    llm_max_tokens: int = 2000
    llm_temperature: float = 0.7

    # Timeouts (seconds) -----------------------------------------------
    http_timeout_seconds: float = 30.0
    step_timeout_seconds: float = 60.0
    execution_timeout_seconds: float = 300.0

    # Scheduler ---------------------------------------------------------
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 60
    scheduler_max_concurrency: int = 4
    agent_lease_seconds: int = 600

    # Helper for tests to derive a tweaked copy -------------------------
    def override(self, **kwargs: Any) -> "Settings":
        for key in kwargs:
            if not hasattr(self, key):
                raise AttributeError(f"Settings has no attribute '{key}'")
        return replace(self, **kwargs)


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Populate :class:`Settings` from the environment (and an optional ``.env``)."""

    if env_file is not None:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    return Settings(
        testing=_truthy(os.getenv("TESTING")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./flowbot.db"),
        llm_api_key=os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY"),
        llm_base_url=os.getenv("LLM_BASE_URL", "https://openrouter.ai/api/v1"),
        llm_model=os.getenv("LLM_MODEL", "anthropic/claude-3.5-sonnet"),
        llm_max_tokens=_int("LLM_MAX_TOKENS", 2000),
        llm_temperature=_float("LLM_TEMPERATURE", 0.7),
        http_timeout_seconds=_float("HTTP_TIMEOUT_SECONDS", 30.0),
        step_timeout_seconds=_float("STEP_TIMEOUT_SECONDS", 60.0),
        execution_timeout_seconds=_float("EXECUTION_TIMEOUT_SECONDS", 300.0),
        scheduler_enabled=_truthy(os.getenv("SCHEDULER_ENABLED")),
        scheduler_interval_seconds=_int("SCHEDULER_INTERVAL_SECONDS", 60),
        scheduler_max_concurrency=_int("SCHEDULER_MAX_CONCURRENCY", 4),
        agent_lease_seconds=_int("AGENT_LEASE_SECONDS", 600),
    )


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the root logger."""

    level = getattr(logging, settings.log_level.upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s - %(name)s - %(message)s", handlers=[logging.StreamHandler()])

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = ["Settings", "load_settings", "configure_logging"]
