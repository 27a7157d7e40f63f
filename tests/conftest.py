"""Shared pytest fixtures: fake sink/engine/provider, frame factory, polling helper."""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import numpy as np
import pytest
from src.base import (
    HLS_MIME_TYPE,
    BaseEngine,
    BaseSink,
    EngineConfig,
    EngineErrorData,
    EngineErrorKind,
    EngineEvent,
    EngineProvider,
    FrameData,
)
from src.ingestion.frame_buffer import MediaHandle
from src.ingestion.stream_session import StreamSession


def make_frame(sink_id: str = "sink-001", frame_number: int = 0) -> FrameData:
    return FrameData(
        image=np.zeros((4, 4, 3), dtype=np.uint8),
        sink_id=sink_id,
        timestamp=datetime.now(UTC),
        frame_number=frame_number,
    )


def wait_until(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll ``predicate`` until truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeSink(BaseSink):
    """Sink driven by the test: call ``emit_ready``/``emit_error`` by hand."""

    def __init__(self, native_hls: bool = False, sink_id: str = "fake-sink") -> None:
        self.native_hls = native_hls
        self.sink_id = sink_id
        self.attach_calls: list[str] = []
        self.detach_calls = 0
        self.buffering: tuple[bool, float] | None = None
        self._source: str | None = None
        self._on_ready: Callable[[], None] | None = None
        self._on_error: Callable[[Exception], None] | None = None

    @property
    def source(self) -> str | None:
        return self._source

    def can_play_type(self, mime_type: str) -> bool:
        if mime_type == HLS_MIME_TYPE:
            return self.native_hls
        return True

    def attach_source(self, url, on_ready, on_error) -> None:
        self._source = url
        self._on_ready = on_ready
        self._on_error = on_error
        self.attach_calls.append(url)

    def detach_source(self) -> None:
        self._source = None
        self._on_ready = None
        self._on_error = None
        self.detach_calls += 1

    def capture_stream(self) -> MediaHandle:
        return MediaHandle(self.sink_id, max_size=10)

    def configure_buffering(self, low_latency: bool, back_buffer_s: float) -> None:
        self.buffering = (low_latency, back_buffer_s)

    def emit_ready(self) -> None:
        self._on_ready()

    def emit_error(self, exc: Exception | None = None) -> None:
        self._on_error(exc or OSError("stream dropped"))


class FakeEngine(BaseEngine):
    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self.listeners: dict[EngineEvent, list[Callable]] = {}
        self.loaded_url: str | None = None
        self.sink: BaseSink | None = None
        self.start_load_calls = 0
        self.recover_calls = 0
        self.destroyed = False

    def on(self, event, callback) -> None:
        self.listeners.setdefault(event, []).append(callback)

    def load_source(self, url: str) -> None:
        self.loaded_url = url

    def attach_media(self, sink: BaseSink) -> None:
        self.sink = sink
        sink.attach_source(self.loaded_url, lambda: None, lambda exc: None)

    def start_load(self) -> None:
        self.start_load_calls += 1

    def recover_media_error(self) -> None:
        self.recover_calls += 1

    def destroy(self) -> None:
        self.destroyed = True
        if self.sink is not None:
            self.sink.detach_source()
            self.sink = None

    def emit(self, event: EngineEvent, payload: Any = None) -> None:
        for callback in list(self.listeners.get(event, ())):
            callback(payload)

    def manifest_parsed(self) -> None:
        self.emit(EngineEvent.MANIFEST_PARSED, {"levels": 1})

    def error(self, kind: EngineErrorKind, fatal: bool = True) -> None:
        self.emit(EngineEvent.ERROR, EngineErrorData(kind=kind, fatal=fatal, details=kind.value))


class FakeEngineProvider(EngineProvider):
    def __init__(self, supported: bool = True) -> None:
        self.supported = supported
        self.engines: list[FakeEngine] = []

    def is_supported(self) -> bool:
        return self.supported

    def create(self, config: EngineConfig) -> FakeEngine:
        engine = FakeEngine(config)
        self.engines.append(engine)
        return engine

    @property
    def latest(self) -> FakeEngine:
        return self.engines[-1]


@pytest.fixture()
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture()
def engine_provider() -> FakeEngineProvider:
    return FakeEngineProvider()


@pytest.fixture()
def make_session():
    """Build sessions with zero retry and recovery delays; all are disconnected on teardown."""
    sessions: list[StreamSession] = []

    def _make(sink: BaseSink, **kwargs: Any) -> StreamSession:
        kwargs.setdefault("reconnect_delay_ms", 0)
        kwargs.setdefault("recovery_delay_ms", 0)
        kwargs.setdefault("connect_timeout_s", 5.0)
        session = StreamSession(sink, **kwargs)
        sessions.append(session)
        return session

    yield _make

    for session in sessions:
        session.disconnect()
