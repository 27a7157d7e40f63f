"""Thread-safe bounded frame buffer and the capture handle built on it."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator

from src.base import FrameData
from src.config import get_settings


class FrameBuffer:
    """Thread-safe bounded buffer for decoded frames.

    Uses a drop-oldest policy when full to ensure real-time freshness.
    The ``put`` method is safe to call from a sink's reader thread while
    ``get`` and ``dropped_count`` are read from the consumer thread.
    """

    def __init__(self, sink_id: str, max_size: int | None = None) -> None:
        if max_size is None:
            max_size = get_settings().sink.frame_buffer_size
        self._sink_id = sink_id
        self._queue: queue.Queue[FrameData] = queue.Queue(maxsize=max_size)
        self._dropped_count = 0
        self._drop_lock = threading.Lock()

    @property
    def sink_id(self) -> str:
        """Sink ID this buffer receives frames from."""
        return self._sink_id

    def put(self, frame: FrameData) -> None:
        """Add a frame, dropping the oldest if the buffer is full."""
        if self._queue.full():
            try:
                self._queue.get_nowait()
                with self._drop_lock:
                    self._dropped_count += 1
            except queue.Empty:
                pass
        self._queue.put_nowait(frame)

    def get(self, timeout: float = 1.0) -> FrameData | None:
        """Get the next frame, returning ``None`` on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def clear(self) -> None:
        """Drain all frames from the buffer."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    @property
    def size(self) -> int:
        """Current number of frames in the buffer."""
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        """Total number of frames dropped due to full buffer (thread-safe)."""
        with self._drop_lock:
            return self._dropped_count

    def is_empty(self) -> bool:
        """Check if the buffer is empty."""
        return self._queue.empty()


class MediaHandle:
    """Capturable handle on a sink, handed to recording collaborators.

    The sink pushes every decoded frame into the handle's buffer until the
    handle is closed.
    """

    def __init__(
        self,
        sink_id: str,
        max_size: int | None = None,
        on_close: Callable[[MediaHandle], None] | None = None,
    ) -> None:
        self._buffer = FrameBuffer(sink_id, max_size=max_size)
        self._on_close = on_close
        self._closed = threading.Event()

    @property
    def sink_id(self) -> str:
        return self._buffer.sink_id

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def dropped_count(self) -> int:
        return self._buffer.dropped_count

    def push(self, frame: FrameData) -> None:
        """Deliver a frame from the sink. Ignored once closed."""
        if not self._closed.is_set():
            self._buffer.put(frame)

    def read(self, timeout: float = 1.0) -> FrameData | None:
        """Next captured frame, or ``None`` on timeout or after close."""
        if self._closed.is_set() and self._buffer.is_empty():
            return None
        return self._buffer.get(timeout=timeout)

    def frames(self, timeout: float = 0.1) -> Iterator[FrameData]:
        """Yield captured frames until the handle is closed and drained."""
        while True:
            frame = self.read(timeout=timeout)
            if frame is not None:
                yield frame
            elif self._closed.is_set():
                return

    def close(self) -> None:
        """Stop receiving frames and unsubscribe from the sink."""
        if self._closed.is_set():
            return
        self._closed.set()
        if self._on_close is not None:
            self._on_close(self)
