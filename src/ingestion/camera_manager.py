"""Multi-camera orchestration: one independent stream session per camera."""

from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Any

from loguru import logger

from src.base import BaseSink, EngineProvider, ProtocolHint, StreamStatus
from src.ingestion.stream_session import StreamSession


class CameraManager:
    """Registry of per-camera stream sessions.

    Sessions share no state; the lock only guards the registry mapping, and
    session calls are made outside it.
    """

    def __init__(self, engine_provider: EngineProvider | None = None) -> None:
        self._engine_provider = engine_provider
        self._sessions: dict[str, StreamSession] = {}
        self._lock = threading.Lock()

    def add_camera(self, camera_id: str, sink: BaseSink, **session_kwargs: Any) -> StreamSession:
        """Register a camera and create its session around ``sink``."""
        if len(camera_id) < 1 or len(camera_id) > 50:
            raise ValueError(f"camera_id must be 1-50 chars, got {len(camera_id)}")
        session_kwargs.setdefault("engine_provider", self._engine_provider)
        with self._lock:
            if camera_id in self._sessions:
                raise ValueError(f"Camera {camera_id!r} already registered")
            session = StreamSession(sink, session_id=camera_id, **session_kwargs)
            self._sessions[camera_id] = session
        logger.info("Added camera {}", camera_id)
        return session

    def remove_camera(self, camera_id: str) -> None:
        """Disconnect and forget a camera. Unknown ids are a no-op."""
        with self._lock:
            session = self._sessions.pop(camera_id, None)
        if session is not None:
            session.disconnect()
            logger.info("Removed camera {}", camera_id)

    def get(self, camera_id: str) -> StreamSession | None:
        with self._lock:
            return self._sessions.get(camera_id)

    def connect(
        self,
        camera_id: str,
        url: str,
        protocol_hint: ProtocolHint | str | None = None,
    ) -> Future:
        """Connect a registered camera; raises ``KeyError`` for unknown ids."""
        session = self._require(camera_id)
        return session.connect(url, protocol_hint)

    def disconnect(self, camera_id: str) -> None:
        self._require(camera_id).disconnect()

    def disconnect_all(self) -> None:
        """Disconnect every registered camera."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.disconnect()
        logger.info("Disconnected {} camera streams", len(sessions))

    def statuses(self) -> dict[str, StreamStatus]:
        """Status snapshot for every registered camera."""
        with self._lock:
            items = list(self._sessions.items())
        return {camera_id: session.get_status() for camera_id, session in items}

    @property
    def active_cameras(self) -> list[str]:
        """IDs of cameras with an attached target."""
        return [cid for cid, status in self.statuses().items() if status.is_connected]

    def _require(self, camera_id: str) -> StreamSession:
        session = self.get(camera_id)
        if session is None:
            raise KeyError(f"Camera {camera_id!r} is not registered")
        return session
