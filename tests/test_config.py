"""Tests for the configuration system."""

from __future__ import annotations

from src.config import (
    EngineSettings,
    Settings,
    StreamSettings,
    YamlDefaultsSource,
    get_settings,
)


def test_default_settings():
    """Settings load with hardcoded defaults when no env/yaml override."""
    settings = Settings()
    assert settings.app_name == "camfeed"
    assert settings.debug is False
    assert settings.log_level == "INFO"


def test_stream_defaults():
    """Reconnect budget and delay match the documented defaults."""
    stream = StreamSettings()
    assert stream.max_reconnect_attempts == 5
    assert stream.reconnect_delay_ms == 2000
    assert stream.connect_timeout_s == 10.0
    assert stream.recovery_delay_ms == 1000


def test_engine_defaults():
    engine = EngineSettings()
    assert engine.enable_worker is True
    assert engine.low_latency_mode is True
    assert engine.back_buffer_length_s == 90.0
    assert engine.max_bandwidth is None


def test_env_override(monkeypatch):
    """Environment variables override defaults."""
    monkeypatch.setenv("CAMFEED_DEBUG", "true")
    monkeypatch.setenv("CAMFEED_LOG_LEVEL", "DEBUG")
    settings = Settings()
    assert settings.debug is True
    assert settings.log_level == "DEBUG"


def test_nested_env_override(monkeypatch):
    """Nested sections are reachable through their own prefix."""
    monkeypatch.setenv("CAMFEED_STREAM__MAX_RECONNECT_ATTEMPTS", "9")
    assert StreamSettings().max_reconnect_attempts == 9


def test_get_settings_returns_settings():
    """get_settings() returns a valid Settings instance."""
    get_settings.cache_clear()
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.stream.max_reconnect_attempts >= 1
    get_settings.cache_clear()


def test_get_settings_is_singleton():
    """get_settings() should return the same object on repeated calls."""
    get_settings.cache_clear()
    s1 = get_settings()
    s2 = get_settings()
    assert s1 is s2
    get_settings.cache_clear()


def test_yaml_loads_stream_section():
    """from_yaml() should pick up the stream section from config.yaml."""
    settings = Settings.from_yaml()
    assert settings.stream.reconnect_delay_ms == 2000
    assert settings.stream.max_reconnect_attempts == 5


def test_yaml_loads_sink_section():
    """from_yaml() should pick up the sink section from config.yaml."""
    settings = Settings.from_yaml()
    assert settings.sink.default_fps == 5
    assert settings.sink.frame_buffer_size == 100


def test_yaml_loads_engine_section():
    settings = Settings.from_yaml()
    assert settings.engine.manifest_timeout_s == 10.0


def test_env_overrides_yaml_through_from_yaml(monkeypatch):
    """Env vars outrank config.yaml for nested keys; untouched keys keep YAML values."""
    monkeypatch.setenv("CAMFEED_STREAM__MAX_RECONNECT_ATTEMPTS", "9")
    monkeypatch.setenv("CAMFEED_STREAM__RECONNECT_DELAY_MS", "100")
    stream = Settings.from_yaml().stream
    assert stream.max_reconnect_attempts == 9
    assert stream.reconnect_delay_ms == 100
    assert stream.connect_timeout_s == 10.0


def test_env_overrides_yaml_app_section(monkeypatch):
    monkeypatch.setenv("CAMFEED_LOG_LEVEL", "ERROR")
    assert Settings.from_yaml().log_level == "ERROR"


def test_get_settings_sees_env_override(monkeypatch):
    monkeypatch.setenv("CAMFEED_ENGINE__MAX_BANDWIDTH", "3000000")
    get_settings.cache_clear()
    try:
        assert get_settings().engine.max_bandwidth == 3_000_000
    finally:
        get_settings.cache_clear()


def test_yaml_source_flattens_app_section():
    source = YamlDefaultsSource(
        Settings,
        {"app": {"log_level": "DEBUG"}, "stream": {"recovery_delay_ms": 250}, "unknown": 1},
    )
    assert source() == {"log_level": "DEBUG", "stream": {"recovery_delay_ms": 250}}
