from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Database
    db_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("ACTIONFLOW_DB_PATH", "data/actionflow.db")
        )
    )

    # Scheduler cadences
    discovery_interval: float = field(
        default_factory=lambda: float(os.environ.get("ACTIONFLOW_DISCOVERY_INTERVAL", "15"))
    )
    maintenance_interval: float = field(
        default_factory=lambda: float(os.environ.get("ACTIONFLOW_MAINTENANCE_INTERVAL", "300"))
    )

    # Executor
    max_concurrency: int = field(
        default_factory=lambda: int(os.environ.get("ACTIONFLOW_MAX_CONCURRENCY", "4"))
    )
    batch_size: int = field(
        default_factory=lambda: int(os.environ.get("ACTIONFLOW_BATCH_SIZE", "50"))
    )
    handler_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("ACTIONFLOW_HANDLER_TIMEOUT", "60"))
    )
    backoff_unit_seconds: float = field(
        default_factory=lambda: float(os.environ.get("ACTIONFLOW_BACKOFF_UNIT", "60"))
    )
    default_max_retries: int = field(
        default_factory=lambda: int(os.environ.get("ACTIONFLOW_MAX_RETRIES", "3"))
    )

    # Maintenance
    stall_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("ACTIONFLOW_STALL_TIMEOUT", "900"))
    )
    retention_days: float = field(
        default_factory=lambda: float(os.environ.get("ACTIONFLOW_RETENTION_DAYS", "30"))
    )

    # Built-in handlers
    file_sandbox_root: Path = field(
        default_factory=lambda: Path(
            os.environ.get("ACTIONFLOW_FILE_SANDBOX", "data/files")
        )
    )
    allowed_commands: tuple[str, ...] = field(
        default_factory=lambda: _env_list("ACTIONFLOW_ALLOWED_COMMANDS")
    )

    # LLM (intent classification and freeform intents)
    anthropic_api_key: str | None = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY")
    )
    classifier_model: str = field(
        default_factory=lambda: os.environ.get("ACTIONFLOW_CLASSIFIER_MODEL", "claude-sonnet-4-20250514")
    )
    intent_model: str = field(
        default_factory=lambda: os.environ.get("ACTIONFLOW_INTENT_MODEL", "claude-sonnet-4-20250514")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("ACTIONFLOW_LOG_LEVEL", "INFO")
    )


def get_config() -> Config:
    """Return a Config instance (singleton-friendly via module caching)."""
    return Config()
