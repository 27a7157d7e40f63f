"""OpenCV-backed playback sink with a per-source reader thread."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

import cv2
from loguru import logger

from src.base import HLS_MIME_TYPE, BaseSink, FrameData
from src.config import get_settings
from src.ingestion._utils import sanitize_url
from src.ingestion.frame_buffer import MediaHandle

_HLS_MIME_TYPES = frozenset({HLS_MIME_TYPE, "application/x-mpegurl", "audio/mpegurl"})
_PROGRESSIVE_PREFIXES = ("video/", "multipart/x-mixed-replace")

# OpenCV capture configuration
_LOW_LATENCY_BUFFER_SIZE = 1
_DEFAULT_BUFFER_SIZE = 3

# Thread management
_THREAD_JOIN_TIMEOUT_S = 5.0


def _ffmpeg_available() -> bool:
    """Whether this OpenCV build can open network streams through FFmpeg."""
    try:
        return bool(cv2.videoio_registry.hasBackend(cv2.CAP_FFMPEG))
    except AttributeError:
        return False


class StreamOpenError(ConnectionError):
    """The capture could not be opened."""


class StreamReadError(IOError):
    """The capture stopped delivering frames."""


class OpenCVSink(BaseSink):
    """Decodes a stream URL with OpenCV ``VideoCapture`` in a background thread.

    OpenCV ``VideoCapture`` is not thread-safe, so each attached source gets
    its own daemon thread that reads frames and fans them out to capture
    handles. Failures are reported once through ``on_error`` and end the
    thread; retry decisions belong to the session driving the sink.
    """

    def __init__(
        self,
        sink_id: str,
        target_fps: int | None = None,
        native_hls: bool | None = None,
        frame_callback: Callable[[FrameData], None] | None = None,
    ) -> None:
        settings = get_settings().sink
        self._sink_id = sink_id
        self._target_fps = target_fps or settings.default_fps
        self._open_timeout_ms = settings.open_timeout_ms
        self._read_timeout_ms = settings.read_timeout_ms
        self._native_hls = _ffmpeg_available() if native_hls is None else native_hls
        self._frame_callback = frame_callback

        self._cap_buffer_size = _DEFAULT_BUFFER_SIZE
        self._handle_buffer_size: int | None = None

        self._url: str | None = None
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None
        self._metadata: dict[str, float] = {}

        self._handles: list[MediaHandle] = []
        self._handles_lock = threading.Lock()

    @property
    def sink_id(self) -> str:
        """ID used to tag frames decoded by this sink."""
        return self._sink_id

    @property
    def source(self) -> str | None:
        return self._url

    @property
    def metadata(self) -> dict[str, float]:
        """Width, height and fps reported by the capture once opened."""
        return dict(self._metadata)

    def is_alive(self) -> bool:
        """Check if the reader thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def can_play_type(self, mime_type: str) -> bool:
        mime = mime_type.split(";", 1)[0].strip().lower()
        if mime in _HLS_MIME_TYPES:
            return self._native_hls
        return mime.startswith(_PROGRESSIVE_PREFIXES)

    def configure_buffering(self, low_latency: bool, back_buffer_s: float) -> None:
        self._cap_buffer_size = _LOW_LATENCY_BUFFER_SIZE if low_latency else _DEFAULT_BUFFER_SIZE
        self._handle_buffer_size = max(1, int(back_buffer_s * self._target_fps))

    # ------------------------------------------------------------------
    # Source attachment
    # ------------------------------------------------------------------

    def attach_source(
        self,
        url: str,
        on_ready: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        """Spawn the reader thread for ``url``, replacing any current source."""
        self.detach_source()
        # Each attachment owns its stop event; a reader outliving detach stays stopped
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._url = url
        self._metadata = {}
        self._thread = threading.Thread(
            target=self._reader_loop,
            args=(url, stop_event, on_ready, on_error),
            daemon=True,
            name=f"sink-{self._sink_id}",
        )
        self._thread.start()
        logger.debug("Sink {} attached to {}", self._sink_id, sanitize_url(url))

    def detach_source(self) -> None:
        """Signal the reader thread to stop and wait for it."""
        if self._stop_event is not None:
            self._stop_event.set()
            self._stop_event = None
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=_THREAD_JOIN_TIMEOUT_S)
        self._thread = None
        if self._url is not None:
            logger.debug("Sink {} detached from {}", self._sink_id, sanitize_url(self._url))
        self._url = None

    # ------------------------------------------------------------------
    # Capture handles
    # ------------------------------------------------------------------

    def capture_stream(self) -> MediaHandle:
        """Subscribe a new capture handle to decoded frames."""
        handle = MediaHandle(
            self._sink_id,
            max_size=self._handle_buffer_size,
            on_close=self._unsubscribe,
        )
        with self._handles_lock:
            self._handles.append(handle)
        return handle

    def _unsubscribe(self, handle: MediaHandle) -> None:
        with self._handles_lock:
            if handle in self._handles:
                self._handles.remove(handle)

    def _emit(self, frame_data: FrameData) -> None:
        with self._handles_lock:
            handles = list(self._handles)
        for handle in handles:
            handle.push(frame_data)
        if self._frame_callback is not None:
            try:
                self._frame_callback(frame_data)
            except Exception:
                logger.opt(exception=True).error(
                    "Frame callback error on sink {}", self._sink_id
                )

    # ------------------------------------------------------------------
    # Reader loop
    # ------------------------------------------------------------------

    def _open(self, url: str, stop_event: threading.Event) -> cv2.VideoCapture | None:
        """Open the video capture with timeout protection."""
        cap = cv2.VideoCapture(
            url,
            cv2.CAP_FFMPEG,
            [
                cv2.CAP_PROP_OPEN_TIMEOUT_MSEC, self._open_timeout_ms,
                cv2.CAP_PROP_READ_TIMEOUT_MSEC, self._read_timeout_ms,
            ],
        )
        if cap.isOpened() and not stop_event.is_set():
            cap.set(cv2.CAP_PROP_BUFFERSIZE, self._cap_buffer_size)
            self._metadata = {
                "width": cap.get(cv2.CAP_PROP_FRAME_WIDTH),
                "height": cap.get(cv2.CAP_PROP_FRAME_HEIGHT),
                "fps": cap.get(cv2.CAP_PROP_FPS),
            }
            return cap
        cap.release()
        return None

    def _report(self, stop_event: threading.Event, callback: Callable, *args) -> None:
        if stop_event.is_set():
            return
        try:
            callback(*args)
        except Exception:
            logger.opt(exception=True).error("Sink {} listener failed", self._sink_id)

    def _reader_loop(
        self,
        url: str,
        stop_event: threading.Event,
        on_ready: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        """Open, announce metadata, then read frames throttled to target FPS."""
        cap = self._open(url, stop_event)
        if cap is None:
            if not stop_event.is_set():
                logger.warning("Sink {} failed to open {}", self._sink_id, sanitize_url(url))
            self._report(stop_event, on_error, StreamOpenError(f"Could not open {sanitize_url(url)}"))
            return
        self._report(stop_event, on_ready)

        min_interval = 1.0 / self._target_fps
        last_emit_time = 0.0
        frame_number = 0
        try:
            while not stop_event.is_set():
                if not cap.grab():
                    logger.warning("Read failure on sink {}", self._sink_id)
                    self._report(stop_event, on_error, StreamReadError(f"Stream {sanitize_url(url)} stalled"))
                    break

                now = time.monotonic()
                if now - last_emit_time < min_interval:
                    continue

                ret, frame = cap.retrieve()
                if not ret or stop_event.is_set():
                    continue

                last_emit_time = now
                frame_number += 1
                self._emit(
                    FrameData(
                        image=frame,
                        sink_id=self._sink_id,
                        timestamp=datetime.now(UTC),
                        frame_number=frame_number,
                    )
                )
        finally:
            cap.release()
