"""
Runtime settings for the Mira backend.

Resolved once from environment variables (``.env`` is loaded by the app
factory) into a frozen config object shared by the API layer and the
orchestrator.
"""

import os
from dataclasses import dataclass

from mira.utils.logger import get_logger

logger = get_logger("config")

DEFAULT_DB_PATH = "./data/mira.db"


@dataclass(frozen=True)
class Settings:
    """Immutable settings resolved from the environment."""
    # Storage
    db_path: str = DEFAULT_DB_PATH

    # LLM
    anthropic_api_key: str = ""
    anthropic_model: str = ""        # empty = use client default

    # External services
    scan_service_url: str = "http://localhost:8001"
    graph_service_url: str = "http://localhost:8002"

    # Timing
    related_questions_timeout: float = 10.0
    progress_step_delay: float = 0.5

    # HTTP
    cors_origins: tuple = ("http://localhost:5173", "http://localhost:3000")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid numeric setting, using default", extra={"action": "config_invalid", "extra": {"name": name, "value": raw}})
        return default


def load_settings() -> Settings:
    """Build Settings from environment variables, falling back to defaults."""
    defaults = Settings()
    origins = os.getenv("CORS_ORIGINS")
    return Settings(
        db_path=os.getenv("MIRA_DB_PATH", defaults.db_path),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", ""),
        scan_service_url=os.getenv("SCAN_SERVICE_URL", defaults.scan_service_url).rstrip("/"),
        graph_service_url=os.getenv("GRAPH_SERVICE_URL", defaults.graph_service_url).rstrip("/"),
        related_questions_timeout=_float_env("RELATED_QUESTIONS_TIMEOUT", defaults.related_questions_timeout),
        progress_step_delay=_float_env("PROGRESS_STEP_DELAY", defaults.progress_step_delay),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) if origins else defaults.cors_origins,
    )
