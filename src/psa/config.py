"""PSA configuration.

Loads from environment variables and .env file using pydantic-settings.
All variables use the PSA_ prefix, e.g. PSA_RULES_DIR or
PSA_RULE_CHECK_INTERVAL.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    """XDG data directory for psa (~/.local/share/psa by default)."""
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / "psa"


class PsaSettings(BaseSettings):
    """Configuration for the rules engine, lifecycle manager and daemon."""

    # ----- Storage -----
    data_dir: Path = Field(
        default_factory=_default_data_dir,
        description="Root data directory.",
    )
    rules_dir: Path | None = Field(
        default=None,
        description="Rules store directory. Defaults to <data_dir>/rules.",
    )
    git_versioning: bool = Field(
        default=True,
        description="Commit every rule creation and edit to a git repository.",
    )

    # ----- Tolerance -----
    min_success_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    min_samples: int = Field(default=10, ge=0)
    variance_threshold: float = Field(default=0.05, ge=0.0)
    failure_review_threshold: int = Field(default=3, ge=0)
    rate_window_secs: int = Field(
        default=604800,
        description="Time window for rate calculations (one week).",
    )

    # ----- Daemon -----
    health_check_interval: int = Field(default=60, description="Seconds.")
    rule_check_interval: int = Field(default=300, description="Seconds.")

    # ----- Notifications -----
    notify_errors_only: bool = True
    notify_desktop: bool = True
    notify_log: bool = True
    notify_min_severity: str = "warn"

    # ----- Timeouts -----
    probe_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single condition probe process.",
    )
    action_timeout_seconds: float = Field(
        default=120.0,
        description="Upper bound for a single action process.",
    )

    # ----- Tracing / logging -----
    correlation_id: str | None = Field(
        default=None,
        description="Correlation ID handed over by a calling tool.",
    )
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="PSA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _resolve_rules_dir(self) -> PsaSettings:
        if self.rules_dir is None:
            self.rules_dir = self.data_dir / "rules"
        return self

    @property
    def proposals_path(self) -> Path:
        return self.data_dir / "proposals.yaml"

    @property
    def knowledge_path(self) -> Path:
        return self.data_dir / "knowledge.yaml"


@lru_cache
def get_settings() -> PsaSettings:
    """Get cached settings singleton."""
    return PsaSettings()
