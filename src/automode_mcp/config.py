"""Configuration management for the auto-mode orchestrator."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

PROVIDER_NAMES = ("claude", "codex", "cursor", "mock")


def _split_paths(value, *, default: tuple[Path, ...]) -> tuple[Path, ...]:
    if value is None or value == "":
        return default
    if isinstance(value, (list, tuple)):
        return tuple(Path(str(item)) for item in value)
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
        return tuple(Path(part) for part in parts) or default
    raise TypeError("Path lists must be a list of paths or a path-separated string")


class AutomodeSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    default_provider: str = Field(default="claude", validation_alias="AUTOMODE_PROVIDER")
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    codex_path: str | None = Field(default=None, validation_alias="CODEX_PATH")
    cursor_path: str | None = Field(default=None, validation_alias="CURSOR_PATH")
    default_model: str | None = Field(default=None, validation_alias="AUTOMODE_DEFAULT_MODEL")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="AUTOMODE_PROFILE_PATHS"
    )
    default_profile: str | None = Field(default=None, validation_alias="AUTOMODE_DEFAULT_PROFILE")
    log_level: str = Field(default="INFO", validation_alias="AUTOMODE_LOG_LEVEL")
    project_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(), validation_alias="AUTOMODE_PROJECT_PATHS"
    )

    max_concurrency: int = Field(default=3, validation_alias="AUTOMODE_MAX_CONCURRENCY")
    max_retry_attempts: int = Field(default=3, validation_alias="AUTOMODE_MAX_RETRY_ATTEMPTS")
    retry_base_delay: float = Field(default=2.0, validation_alias="AUTOMODE_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=60.0, validation_alias="AUTOMODE_RETRY_MAX_DELAY")
    cancel_grace_seconds: float = Field(
        default=10.0, validation_alias="AUTOMODE_CANCEL_GRACE_SECONDS"
    )
    failure_pause_threshold: int = Field(
        default=3, validation_alias="AUTOMODE_FAILURE_PAUSE_THRESHOLD"
    )
    failure_window_seconds: float = Field(
        default=60.0, validation_alias="AUTOMODE_FAILURE_WINDOW_SECONDS"
    )

    branch_prefix: str = Field(default="feature", validation_alias="AUTOMODE_BRANCH_PREFIX")
    worktree_dir: str = Field(default=".worktrees", validation_alias="AUTOMODE_WORKTREE_DIR")
    remove_worktree_on_failure: bool = Field(
        default=False, validation_alias="AUTOMODE_REMOVE_WORKTREE_ON_FAILURE"
    )
    init_script: str = Field(
        default=".automaker/worktree-init.sh", validation_alias="AUTOMODE_INIT_SCRIPT"
    )
    init_script_timeout: float = Field(
        default=300.0, validation_alias="AUTOMODE_INIT_SCRIPT_TIMEOUT"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AUTOMODE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("default_provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in PROVIDER_NAMES:
            raise ValueError(f"AUTOMODE_PROVIDER must be one of {', '.join(PROVIDER_NAMES)}")
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        return _split_paths(value, default=(Path("profiles"),))

    @field_validator("project_paths", mode="before")
    @classmethod
    def _parse_project_paths(cls, value):
        return _split_paths(value, default=())

    @field_validator("max_concurrency", "max_retry_attempts", "failure_pause_threshold")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator(
        "retry_base_delay",
        "retry_max_delay",
        "cancel_grace_seconds",
        "failure_window_seconds",
        "init_script_timeout",
    )
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> AutomodeSettings:
    """Return cached settings instance."""

    settings = AutomodeSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    settings.project_paths = tuple(path.expanduser().resolve() for path in settings.project_paths)
    return settings


__all__ = ["AutomodeSettings", "PROVIDER_NAMES", "get_settings"]
