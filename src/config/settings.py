from __future__ import annotations

import re
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import so every BaseSettings subclass sees the env vars
load_dotenv()

CONSUMER_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$", re.IGNORECASE)


class EventStoreSettings(BaseSettings):
    """Knowledge event log settings. Env vars prefixed with EVENTS_."""

    model_config = SettingsConfigDict(env_prefix="EVENTS_")

    max_segment_bytes: int = Field(1024 * 1024, gt=0)
    compact_after_days: int = Field(7, ge=0)


class LockSettings(BaseSettings):
    """Orchestrator advisory lock settings. Env vars prefixed with LOCK_."""

    model_config = SettingsConfigDict(env_prefix="LOCK_")

    ttl_ms: int = Field(8 * 60 * 1000, gt=0)
    lock_name: str = "lane-orchestrate"
    status_keep: int = Field(50, ge=1)  # LOCK_STATUS-*.json snapshots retained


class OrchestratorSettings(BaseSettings):
    """Orchestrator run settings. Env vars prefixed with ORCHESTRATOR_."""

    model_config = SettingsConfigDict(env_prefix="ORCHESTRATOR_")

    repo_limit: int | None = Field(None, ge=1)  # cap on next_action.target_repos
    followups_enabled: bool = True
    followup_consumer: str = "qa-merge-followups"
    max_followup_events: int | None = Field(None, ge=0)

    @field_validator("followup_consumer")
    @classmethod
    def _validate_consumer(cls, v: str) -> str:
        if not CONSUMER_NAME_RE.match(v):
            raise ValueError(
                f"ORCHESTRATOR_FOLLOWUP_CONSUMER must match {CONSUMER_NAME_RE.pattern} (got '{v}')"
            )
        return v


class LoggingSettings(BaseSettings):
    """Log output settings. Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = "INFO"
    json_output: bool = True

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        normalized = v.strip().upper()
        if normalized not in allowed:
            msg = f"LOG_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return normalized


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    project_root: Path = Field(Path("."), validation_alias="LANEKEEPER_PROJECT_ROOT")
    events: EventStoreSettings = Field(default_factory=EventStoreSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
