"""Configuration management for Cadence."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CadenceSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_dir: Path = Field(default=Path("./.cadence/state"), validation_alias="CADENCE_STATE_DIR")
    enable_backups: bool = Field(default=True, validation_alias="CADENCE_ENABLE_BACKUPS")
    max_backups: int = Field(default=10, validation_alias="CADENCE_MAX_BACKUPS")
    write_retries: int = Field(default=3, validation_alias="CADENCE_WRITE_RETRIES")
    retry_backoff_seconds: float = Field(default=0.01, validation_alias="CADENCE_RETRY_BACKOFF")
    cache_enabled: bool = Field(default=True, validation_alias="CADENCE_CACHE_ENABLED")
    archive_after_days: int = Field(default=30, validation_alias="CADENCE_ARCHIVE_AFTER_DAYS")
    manifest_paths: tuple[Path, ...] = Field(
        default=(Path("manifests"),), validation_alias="CADENCE_MANIFEST_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="CADENCE_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CADENCE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("manifest_paths", mode="before")
    @classmethod
    def _parse_manifest_paths(cls, value):
        if value is None or value == "":
            return (Path("manifests"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("manifests"),)
        raise TypeError("CADENCE_MANIFEST_PATHS must be a list of paths or a path-separated string")

    @field_validator("max_backups", "write_retries")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CADENCE_MAX_BACKUPS and CADENCE_WRITE_RETRIES must be >= 1")
        return value

    @field_validator("retry_backoff_seconds", "archive_after_days")
    @classmethod
    def _validate_non_negative(cls, value):
        if value < 0:
            raise ValueError("CADENCE_RETRY_BACKOFF and CADENCE_ARCHIVE_AFTER_DAYS must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> CadenceSettings:
    """Return cached settings instance."""

    settings = CadenceSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.manifest_paths = tuple(path.expanduser().resolve() for path in settings.manifest_paths)
    return settings


__all__ = ["CadenceSettings", "get_settings"]
