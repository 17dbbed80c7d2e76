"""Typed settings for change-history capture.

Precedence is always: init params > environment > YAML file > defaults.

Environment variables use the ``CHANGE_HISTORY_`` prefix with ``__`` as the
nesting separator, e.g. ``CHANGE_HISTORY_LOGGING__LEVEL=DEBUG``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal, Mapping

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "change-history" / "history.yaml"


class LoggingSettings(BaseModel):
    """Output of the ``change_history`` loggers.

    ``stdout`` gives the package its own stdout handler; left off, records
    propagate to the host application's logging setup.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    stdout: bool = False
    json_output: bool = True
    service: str = "change-history"
    environment: str = "dev"


class HistorySettings(BaseSettings):
    """Root settings resolved from init/env/yaml/default sources."""

    model_config = SettingsConfigDict(
        env_prefix="CHANGE_HISTORY_",
        env_nested_delimiter="__",
        extra="ignore",
        nested_model_default_partial_update=True,
    )

    diff_only: bool = False
    collection_suffix: str = Field(default="_history", min_length=1)
    reserved_field: str = Field(default="history", min_length=1)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    _config_path: ClassVar[Path] = DEFAULT_CONFIG_PATH

    @field_validator("reserved_field")
    @classmethod
    def _reject_underscore_id(cls, value: str) -> str:
        """``_id`` is always written into record data and cannot be reserved."""
        if value == "_id":
            raise ValueError("reserved_field cannot be '_id'")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Apply precedence: init > env > yaml."""
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(
                settings_cls,
                yaml_file=cls._config_path,
                yaml_file_encoding="utf-8",
            ),
        )


def load_settings(
    *,
    cli_params: Mapping[str, Any] | None = None,
    config_path: str | Path | None = None,
) -> HistorySettings:
    """Resolve settings, reading YAML from ``config_path`` when given."""
    settings_cls: type[HistorySettings] = HistorySettings
    if config_path is not None:
        path = Path(config_path)

        class _FileScopedSettings(HistorySettings):
            _config_path: ClassVar[Path] = path

        settings_cls = _FileScopedSettings
    return settings_cls(**dict(cli_params or {}))
