"""Application configuration via pydantic-settings with YAML defaults."""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_CONFIG_PATH = _PROJECT_ROOT / "config" / "config.yaml"


def _load_yaml_config() -> dict[str, Any]:
    """Load default configuration from config.yaml."""
    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            return yaml.safe_load(f) or {}
    return {}


_yaml_defaults = _load_yaml_config()


def _flatten_yaml(data: dict[str, Any]) -> dict[str, Any]:
    """Lift the `app` section to top-level fields; other sections stay nested."""
    flat = dict(data.get("app") or {})
    for key, value in data.items():
        if key != "app":
            flat[key] = value
    return flat


class YamlDefaultsSource(PydanticBaseSettingsSource):
    """Settings source backed by config/config.yaml, below env and .env."""

    def __init__(self, settings_cls: type[BaseSettings], data: dict[str, Any] | None = None) -> None:
        super().__init__(settings_cls)
        self._data = _flatten_yaml(_yaml_defaults if data is None else data)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {name: value for name, value in self._data.items() if name in self.settings_cls.model_fields}


# --- Nested config models ---


class StreamSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CAMFEED_STREAM__")

    max_reconnect_attempts: int = 5
    reconnect_delay_ms: int = 2000
    connect_timeout_s: float = 10.0
    recovery_delay_ms: int = 1000


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CAMFEED_ENGINE__")

    enable_worker: bool = True
    low_latency_mode: bool = True
    back_buffer_length_s: float = 90.0
    manifest_timeout_s: float = 10.0
    max_bandwidth: int | None = None


class SinkSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CAMFEED_SINK__")

    default_fps: int = 5
    open_timeout_ms: int = 5000
    read_timeout_ms: int = 5000
    frame_buffer_size: int = 100


# --- Root settings ---


class Settings(BaseSettings):
    """Root application settings.

    Priority (highest wins):
    1. Environment variables (CAMFEED_ prefix)
    2. .env file
    3. config/config.yaml
    4. Hardcoded defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="CAMFEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = "camfeed"
    debug: bool = False
    log_level: str = "INFO"

    stream: StreamSettings = Field(default_factory=StreamSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    sink: SinkSettings = Field(default_factory=SinkSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Sources are deep-merged: an env var overrides one key of a YAML section
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlDefaultsSource(settings_cls),
        )

    @classmethod
    def from_yaml(cls) -> Settings:
        """Create settings layered over config.yaml (env vars still win)."""
        return cls()


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return application settings singleton."""
    return Settings.from_yaml()
