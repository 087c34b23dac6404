"""Configuration management for Flotilla."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_TOPOLOGIES = {"auto", "flat", "hierarchical"}


class FlotillaSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Repository
    repository_url: str | None = Field(default=None, validation_alias="FLOTILLA_REPOSITORY_URL")
    repo_path: Path = Field(default=Path("./workspace/repo"), validation_alias="FLOTILLA_REPO_PATH")
    workspace_dir: Path = Field(
        default=Path("./workspace/worktrees"), validation_alias="FLOTILLA_WORKSPACE_DIR"
    )
    integration_branch: str = Field(default="main", validation_alias="FLOTILLA_INTEGRATION_BRANCH")
    remote: str = Field(default="origin", validation_alias="FLOTILLA_REMOTE")
    push_enabled: bool = Field(default=True, validation_alias="FLOTILLA_PUSH_ENABLED")
    cleanup_worktrees: bool = Field(default=False, validation_alias="FLOTILLA_CLEANUP_WORKTREES")

    # Team shape
    worker_count: int = Field(default=3, validation_alias="FLOTILLA_WORKER_COUNT")
    cluster_size: int = Field(default=4, validation_alias="FLOTILLA_CLUSTER_SIZE")
    topology: str = Field(default="auto", validation_alias="FLOTILLA_TOPOLOGY")

    # Budget
    max_run_minutes: float = Field(default=120.0, validation_alias="FLOTILLA_MAX_RUN_MINUTES")
    shutdown_timeout: float = Field(default=600.0, validation_alias="FLOTILLA_SHUTDOWN_TIMEOUT")
    iteration_pause: float = Field(default=1.0, validation_alias="FLOTILLA_ITERATION_PAUSE")
    project_direction: str | None = Field(default=None, validation_alias="FLOTILLA_PROJECT_DIRECTION")

    # Executor
    codex_path: str | None = Field(default=None, validation_alias="CODEX_PATH")
    codex_default_model: str | None = Field(default=None, validation_alias="CODEX_DEFAULT_MODEL")
    planner_model: str | None = Field(default=None, validation_alias="FLOTILLA_PLANNER_MODEL")
    worker_model: str | None = Field(default=None, validation_alias="FLOTILLA_WORKER_MODEL")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="FLOTILLA_PROFILE_PATHS"
    )

    # Repository safety wrapper
    git_timeout: float = Field(default=240.0, validation_alias="FLOTILLA_GIT_TIMEOUT")
    stale_lock_seconds: float = Field(default=120.0, validation_alias="FLOTILLA_STALE_LOCK_SECONDS")
    max_lock_scan_depth: int = Field(default=4, validation_alias="FLOTILLA_LOCK_SCAN_DEPTH")
    git_max_retries: int = Field(default=3, validation_alias="FLOTILLA_GIT_MAX_RETRIES")
    git_backoff_base: float = Field(default=1.0, validation_alias="FLOTILLA_GIT_BACKOFF_BASE")
    git_backoff_max: float = Field(default=30.0, validation_alias="FLOTILLA_GIT_BACKOFF_MAX")
    git_backoff_jitter: float = Field(default=0.5, validation_alias="FLOTILLA_GIT_BACKOFF_JITTER")
    failure_ceiling: int = Field(default=50, validation_alias="FLOTILLA_FAILURE_CEILING")
    failure_decay: int = Field(default=2, validation_alias="FLOTILLA_FAILURE_DECAY")

    # Operation queue
    queue_max_size: int = Field(default=100, validation_alias="FLOTILLA_QUEUE_MAX_SIZE")
    queue_operation_timeout: float = Field(
        default=300.0, validation_alias="FLOTILLA_QUEUE_OPERATION_TIMEOUT"
    )
    queue_max_retries: int = Field(default=3, validation_alias="FLOTILLA_QUEUE_MAX_RETRIES")
    queue_retry_delay: float = Field(default=0.5, validation_alias="FLOTILLA_QUEUE_RETRY_DELAY")
    queue_settle_delay: float = Field(default=0.05, validation_alias="FLOTILLA_QUEUE_SETTLE_DELAY")

    # Rate limits and credentials
    credentials_path: Path | None = Field(default=None, validation_alias="FLOTILLA_CREDENTIALS_PATH")
    credential_cooldown_seconds: float = Field(
        default=3600.0, validation_alias="FLOTILLA_CREDENTIAL_COOLDOWN"
    )
    exhausted_retry_delay: float = Field(default=30.0, validation_alias="FLOTILLA_EXHAUSTED_RETRY_DELAY")
    exhausted_retry_cap: float = Field(default=300.0, validation_alias="FLOTILLA_EXHAUSTED_RETRY_CAP")
    rate_limit_scan_interval: float = Field(
        default=10.0, validation_alias="FLOTILLA_RATE_LIMIT_SCAN_INTERVAL"
    )
    rate_limit_patterns: Annotated[tuple[str, ...] | None, NoDecode] = Field(
        default=None, validation_alias="FLOTILLA_RATE_LIMIT_PATTERNS"
    )

    # Persistence
    state_path: Path = Field(default=Path("./workspace/state.json"), validation_alias="FLOTILLA_STATE_PATH")
    auto_resume: bool = Field(default=True, validation_alias="FLOTILLA_AUTO_RESUME")
    autosave_interval: float = Field(default=30.0, validation_alias="FLOTILLA_AUTOSAVE_INTERVAL")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    journal_enabled: bool = Field(default=False, validation_alias="FLOTILLA_JOURNAL_ENABLED")

    log_level: str = Field(default="INFO", validation_alias="FLOTILLA_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FLOTILLA_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("topology")
    @classmethod
    def _normalize_topology(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _TOPOLOGIES:
            raise ValueError("FLOTILLA_TOPOLOGY must be one of auto, flat, hierarchical")
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("FLOTILLA_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("rate_limit_patterns", mode="before")
    @classmethod
    def _parse_patterns(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, str):
            parts = [part.strip() for part in value.split("|") if part.strip()]
            return tuple(parts) or None
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise TypeError("FLOTILLA_RATE_LIMIT_PATTERNS must be a list or a '|'-separated string")

    @field_validator("worker_count", "cluster_size", "failure_ceiling", "queue_max_size")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @property
    def hierarchical(self) -> bool:
        """Whether the run uses clusters of workers under sub-leads."""

        if self.topology == "auto":
            return self.worker_count > self.cluster_size
        return self.topology == "hierarchical"

    @property
    def run_budget_seconds(self) -> float:
        return self.max_run_minutes * 60.0


@lru_cache(maxsize=1)
def get_settings() -> FlotillaSettings:
    """Return cached settings instance."""

    settings = FlotillaSettings()
    settings.repo_path = settings.repo_path.expanduser().resolve()
    settings.workspace_dir = settings.workspace_dir.expanduser().resolve()
    settings.state_path = settings.state_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    if settings.credentials_path is not None:
        settings.credentials_path = settings.credentials_path.expanduser().resolve()
    return settings


__all__ = ["FlotillaSettings", "get_settings"]
