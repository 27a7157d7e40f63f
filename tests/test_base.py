"""Tests for base abstractions and dataclasses."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime

import numpy as np
import pytest
from src.base import (
    BaseEngine,
    BaseSink,
    EngineConfig,
    EngineErrorData,
    EngineErrorKind,
    EngineProvider,
    FrameData,
    ProtocolHint,
    StreamStatus,
    StreamTarget,
    TransportMode,
)


class TestStreamTarget:
    def test_frozen(self):
        target = StreamTarget(url="http://cam/a.m3u8", protocol_hint=ProtocolHint.HLS)
        with pytest.raises(FrozenInstanceError):
            target.url = "http://cam/b.m3u8"  # type: ignore[misc]

    def test_hint_values(self):
        assert ProtocolHint("http") is ProtocolHint.HTTP
        assert ProtocolHint("hls") is ProtocolHint.HLS


class TestStreamStatus:
    def test_defaults(self):
        status = StreamStatus(
            is_connected=False,
            transport_mode=TransportMode.UNATTACHED,
            url=None,
            reconnect_attempts=0,
        )
        assert status.last_error is None
        assert status.state.value == "idle"


class TestFrameData:
    def test_frozen(self):
        fd = FrameData(
            image=np.zeros((2, 2, 3), dtype=np.uint8),
            sink_id="s1",
            timestamp=datetime.now(UTC),
            frame_number=1,
        )
        with pytest.raises(FrozenInstanceError):
            fd.sink_id = "s2"  # type: ignore[misc]


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.enable_worker is True
        assert config.low_latency_mode is True
        assert config.back_buffer_length_s == 90.0

    def test_error_payload(self):
        data = EngineErrorData(kind=EngineErrorKind.MEDIA, fatal=True)
        assert data.details == ""


class TestAbstractBases:
    def test_cannot_instantiate_base_sink(self):
        with pytest.raises(TypeError):
            BaseSink()  # type: ignore[abstract]

    def test_cannot_instantiate_base_engine(self):
        with pytest.raises(TypeError):
            BaseEngine()  # type: ignore[abstract]

    def test_cannot_instantiate_engine_provider(self):
        with pytest.raises(TypeError):
            EngineProvider()  # type: ignore[abstract]
