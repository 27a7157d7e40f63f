"""Base abstractions and shared dataclasses for the ingestion layer."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from src.ingestion.frame_buffer import MediaHandle


HLS_MIME_TYPE = "application/vnd.apple.mpegurl"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProtocolHint(str, Enum):
    HTTP = "http"
    HLS = "hls"


class TransportMode(str, Enum):
    """How a target is fed to the sink."""

    DIRECT = "direct"
    ENGINE_MEDIATED = "engine_mediated"
    UNATTACHED = "unattached"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class FailureClass(str, Enum):
    """Classification of an error signal, which decides the recovery action."""

    NETWORK_ERROR = "network_error"
    MEDIA_ERROR = "media_error"
    OTHER_FATAL = "other_fatal"
    DIRECT_SINK_ERROR = "direct_sink_error"


class EngineEvent(str, Enum):
    MANIFEST_PARSED = "manifest_parsed"
    ERROR = "error"


class EngineErrorKind(str, Enum):
    NETWORK = "network"
    MEDIA = "media"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Shared dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StreamTarget:
    """A stream URL and the protocol it is served with."""

    url: str
    protocol_hint: ProtocolHint


@dataclass(frozen=True, slots=True)
class StreamStatus:
    """Read-only snapshot of a stream session."""

    is_connected: bool
    transport_mode: TransportMode
    url: str | None
    reconnect_attempts: int
    state: SessionState = SessionState.IDLE
    last_error: Exception | None = None


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Tuning for an adaptive-streaming engine instance."""

    enable_worker: bool = True
    low_latency_mode: bool = True
    back_buffer_length_s: float = 90.0
    manifest_timeout_s: float = 10.0
    max_bandwidth: int | None = None


@dataclass(frozen=True, slots=True)
class EngineErrorData:
    """Error payload emitted by an engine with ``EngineEvent.ERROR``."""

    kind: EngineErrorKind
    fatal: bool
    details: str = ""


@dataclass(frozen=True, slots=True)
class FrameData:
    """A single timestamped frame decoded by a sink."""

    image: np.ndarray
    sink_id: str
    timestamp: datetime
    frame_number: int


# ---------------------------------------------------------------------------
# Abstract base classes
# ---------------------------------------------------------------------------


class BaseSink(ABC):
    """Playback element that decodes a URL and renders (or captures) frames.

    Implementations report readiness and failure of the attached source
    through the callbacks handed to ``attach_source``; they never retry on
    their own.
    """

    @property
    @abstractmethod
    def source(self) -> str | None:
        """URL currently attached, or None when detached."""

    @abstractmethod
    def can_play_type(self, mime_type: str) -> bool:
        """Whether the sink decodes ``mime_type`` via plain URL attachment."""

    @abstractmethod
    def attach_source(
        self,
        url: str,
        on_ready: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        """Start decoding ``url``; fire ``on_ready`` once metadata is known."""

    @abstractmethod
    def detach_source(self) -> None:
        """Stop decoding and leave the sink reusable. Safe when detached."""

    @abstractmethod
    def capture_stream(self) -> MediaHandle:
        """Return a handle that receives the frames this sink decodes."""

    def configure_buffering(self, low_latency: bool, back_buffer_s: float) -> None:
        """Apply engine buffering preferences. Sinks may ignore them."""


class BaseEngine(ABC):
    """Adaptive-streaming engine that parses a manifest and feeds a sink."""

    @abstractmethod
    def on(self, event: EngineEvent, callback: Callable[[Any], None]) -> None:
        """Register ``callback`` for ``event``."""

    @abstractmethod
    def load_source(self, url: str) -> None:
        """Set the manifest URL to load."""

    @abstractmethod
    def attach_media(self, sink: BaseSink) -> None:
        """Bind the engine to the sink it feeds."""

    @abstractmethod
    def start_load(self) -> None:
        """(Re)start manifest loading in place."""

    @abstractmethod
    def recover_media_error(self) -> None:
        """Try to recover the media pipeline without a full teardown."""

    @abstractmethod
    def destroy(self) -> None:
        """Release the sink and all resources; no events fire afterwards."""


class EngineProvider(ABC):
    """Environment capability: whether an engine can be created, and how."""

    @abstractmethod
    def is_supported(self) -> bool:
        """Whether the engine library is usable in this environment."""

    @abstractmethod
    def create(self, config: EngineConfig) -> BaseEngine:
        """Instantiate a fresh engine."""
