"""Configuration and environment settings for the mail mirror."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImapSettings(BaseSettings):
    """IMAP network settings shared by every account."""

    model_config = SettingsConfigDict(extra="forbid")

    timeout_seconds: Annotated[float, Field(gt=0, le=3600)] = 120.0


class SyncSettings(BaseSettings):
    """Fetch and threading behaviour of the sync engine."""

    model_config = SettingsConfigDict(extra="forbid")

    batch_size: Annotated[int, Field(ge=1, le=500)] = 50
    days_back: Annotated[int, Field(ge=1)] = 365
    snippet_length: Annotated[int, Field(ge=1, le=10_000)] = 200
    retry_attempts: Annotated[int, Field(ge=1, le=10)] = 3


class StorageSettings(BaseSettings):
    """Settings for the local cache location."""

    model_config = SettingsConfigDict(extra="forbid")

    root_dir: Path = Path("./data")
    sqlite_path_override: Path | None = None

    @field_validator("root_dir")
    @classmethod
    def _root_dir_to_absolute(cls, value: Path) -> Path:
        """Resolve the storage root directory to an absolute path."""
        return value.expanduser().resolve()

    @field_validator("sqlite_path_override")
    @classmethod
    def _path_to_absolute(cls, value: Path | None) -> Path | None:
        """Resolve the optional sqlite override path to an absolute path."""
        return value.expanduser().resolve() if value is not None else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sqlite_path(self) -> Path:
        """Return the resolved sqlite database path."""
        return (self.sqlite_path_override or (self.root_dir / "mailmirror.sqlite3")).resolve()


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(extra="forbid")

    level: Annotated[str, Field(min_length=1)] = "INFO"
    json_logs: bool = True


class AppSettings(BaseSettings):
    """Top-level application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILMIRROR_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    imap: ImapSettings = Field(default_factory=ImapSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(*, env_file: Path | None) -> AppSettings:
    """Load validated settings from environment and optional file.

    Args:
        env_file: Optional .env file path.

    Returns:
        Validated AppSettings instance.
    """
    if env_file is None:
        return AppSettings()
    return AppSettings(_env_file=env_file)  # type: ignore[call-arg]
