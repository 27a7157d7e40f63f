"""Ingestion layer: stream sessions, transport negotiation and sinks.

Imports are lazy to avoid pulling cv2 or the HLS engine's HTTP stack
transitively when only a subset of the package is needed (e.g.
``StreamSession`` with a custom sink does not require OpenCV).
"""

from __future__ import annotations

__all__ = [
    "CameraManager",
    "CapabilityProbe",
    "FrameBuffer",
    "HlsEngine",
    "HlsEngineProvider",
    "MediaHandle",
    "OpenCVSink",
    "StreamSession",
]


def __getattr__(name: str):
    if name == "CameraManager":
        from src.ingestion.camera_manager import CameraManager

        return CameraManager
    if name == "CapabilityProbe":
        from src.ingestion.capability import CapabilityProbe

        return CapabilityProbe
    if name in ("FrameBuffer", "MediaHandle"):
        from src.ingestion import frame_buffer

        return getattr(frame_buffer, name)
    if name in ("HlsEngine", "HlsEngineProvider"):
        from src.ingestion import hls_engine

        return getattr(hls_engine, name)
    if name == "OpenCVSink":
        from src.ingestion.opencv_sink import OpenCVSink

        return OpenCVSink
    if name == "StreamSession":
        from src.ingestion.stream_session import StreamSession

        return StreamSession
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
