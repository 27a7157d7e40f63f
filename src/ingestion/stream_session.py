"""Stream session: transport negotiation and the reconnection state machine.

All state lives on a single actor thread that consumes a message queue.
Sink and engine callbacks, connect requests and disconnects are posted as
messages, so a reconnect can never race a connect already in flight. Retry
and connect-timeout timers are deadlines checked by the actor loop; clearing
them cancels them.
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any

from src.base import (
    BaseEngine,
    BaseSink,
    EngineConfig,
    EngineErrorData,
    EngineErrorKind,
    EngineEvent,
    EngineProvider,
    FailureClass,
    ProtocolHint,
    SessionState,
    StreamStatus,
    StreamTarget,
    TransportMode,
)
from src.config import get_settings
from src.ingestion._utils import sanitize_url
from src.ingestion.capability import CapabilityProbe, infer_protocol
from src.ingestion.errors import (
    CapabilityError,
    ConnectError,
    ConnectTimeoutError,
    ReconnectExhausted,
    SessionStateError,
    SinkNotAttachedError,
)
from src.ingestion.frame_buffer import MediaHandle
from src.logging import session_logger

_ENGINE_ERROR_CLASSES = {
    EngineErrorKind.NETWORK: FailureClass.NETWORK_ERROR,
    EngineErrorKind.MEDIA: FailureClass.MEDIA_ERROR,
    EngineErrorKind.OTHER: FailureClass.OTHER_FATAL,
}


def classify_engine_error(data: EngineErrorData) -> FailureClass:
    """Map an engine error payload to its failure class."""
    return _ENGINE_ERROR_CLASSES.get(data.kind, FailureClass.OTHER_FATAL)


# ---------------------------------------------------------------------------
# Actor messages
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Connect:
    target: StreamTarget
    future: Future


@dataclass(slots=True)
class _Ready:
    generation: int


@dataclass(slots=True)
class _Failed:
    generation: int
    failure_class: FailureClass
    cause: Any = None


@dataclass(slots=True)
class _Disconnect:
    done: threading.Event = field(default_factory=threading.Event)


class StreamSession:
    """Owns one connection between a stream URL and a sink.

    ``connect`` returns a future resolved on the first ready signal; the
    session keeps running afterwards, recovering in place from engine
    network/media errors and renegotiating the whole pipeline on other fatal
    errors until ``disconnect`` is called or the reconnect budget is spent.
    """

    def __init__(
        self,
        sink: BaseSink,
        engine_provider: EngineProvider | None = None,
        max_reconnect_attempts: int | None = None,
        reconnect_delay_ms: int | None = None,
        connect_timeout_s: float | None = None,
        recovery_delay_ms: int | None = None,
        engine_config: EngineConfig | None = None,
        session_id: str = "stream",
    ) -> None:
        settings = get_settings()
        self._sink = sink
        self._probe = CapabilityProbe(engine_provider)
        self._max_reconnect_attempts = (
            settings.stream.max_reconnect_attempts
            if max_reconnect_attempts is None
            else max_reconnect_attempts
        )
        self._reconnect_delay_ms = (
            settings.stream.reconnect_delay_ms if reconnect_delay_ms is None else reconnect_delay_ms
        )
        self._connect_timeout_s = (
            settings.stream.connect_timeout_s if connect_timeout_s is None else connect_timeout_s
        )
        self._recovery_delay_ms = (
            settings.stream.recovery_delay_ms if recovery_delay_ms is None else recovery_delay_ms
        )
        self._engine_config = engine_config or EngineConfig(**settings.engine.model_dump())
        self._session_id = session_id
        self._log = session_logger(session_id)

        # Owned by the actor thread
        self._state = SessionState.IDLE
        self._target: StreamTarget | None = None
        self._transport_mode = TransportMode.UNATTACHED
        self._engine: BaseEngine | None = None
        self._reconnect_attempts = 0
        self._last_error: Exception | None = None
        self._pending: Future | None = None
        self._generation = 0
        self._retry_deadline: float | None = None
        self._connect_deadline: float | None = None
        self._recovery_deadline: float | None = None
        self._recovery_action: Callable[[], None] | None = None

        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lifecycle_lock = threading.RLock()
        self._status_lock = threading.Lock()
        self._status = self._snapshot()
        self._listeners: list[Callable[[StreamStatus], None]] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def sink(self) -> BaseSink:
        return self._sink

    @property
    def state(self) -> SessionState:
        return self.get_status().state

    @property
    def max_reconnect_attempts(self) -> int:
        return self._max_reconnect_attempts

    @property
    def reconnect_delay_ms(self) -> int:
        return self._reconnect_delay_ms

    def connect(self, url: str, protocol_hint: ProtocolHint | str | None = None) -> Future:
        """Start connecting to ``url``; the future resolves once ready."""
        future: Future = Future()
        try:
            target = StreamTarget(url=url, protocol_hint=infer_protocol(url, protocol_hint))
        except ValueError as exc:
            future.set_exception(exc)
            return future
        with self._lifecycle_lock:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run,
                    daemon=True,
                    name=f"session-{self._session_id}",
                )
                self._thread.start()
            self._queue.put(_Connect(target, future))
        return future

    def disconnect(self) -> None:
        """Tear everything down and return to IDLE. Idempotent."""
        if threading.current_thread() is self._thread:
            self._handle_disconnect()
            return
        with self._lifecycle_lock:
            if self._thread is None:
                # Actor already exited (IDLE or after exhaustion): reset inline
                self._reset_to_idle()
                return
            message = _Disconnect()
            self._queue.put(message)
        message.done.wait()

    def get_status(self) -> StreamStatus:
        """Side-effect-free snapshot; safe to poll from any thread."""
        with self._status_lock:
            return self._status

    def add_status_listener(self, callback: Callable[[StreamStatus], None]) -> None:
        """Call ``callback`` with a fresh status on every state change.

        Listeners run on the session's actor thread.
        """
        self._listeners.append(callback)

    def get_capture_handle(self, sink: BaseSink | None = None) -> MediaHandle:
        """Capturable handle on ``sink`` (defaults to this session's sink)."""
        sink = sink or self._sink
        if sink is None or sink.source is None:
            raise SinkNotAttachedError("No source is attached to the sink")
        return sink.capture_stream()

    # ------------------------------------------------------------------
    # Actor loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            timeout = self._next_timeout()
            try:
                message = self._queue.get(timeout=timeout)
            except queue.Empty:
                message = None
            try:
                if message is not None:
                    self._dispatch(message)
                # A busy queue must not starve the timers
                self._fire_due_timers()
            except Exception:
                self._log.opt(exception=True).error(
                    "Session {} failed handling {!r}", self._session_id, message
                )

            with self._lifecycle_lock:
                if self._state in (SessionState.IDLE, SessionState.DISCONNECTED) and self._queue.empty():
                    self._thread = None
                    return

    def _next_timeout(self) -> float | None:
        deadlines = [
            d
            for d in (self._retry_deadline, self._connect_deadline, self._recovery_deadline)
            if d is not None
        ]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())

    def _fire_due_timers(self) -> None:
        now = time.monotonic()
        if self._recovery_deadline is not None and now >= self._recovery_deadline:
            action = self._recovery_action
            self._recovery_deadline = None
            self._recovery_action = None
            if action is not None and self._engine is not None:
                action()
        if self._connect_deadline is not None and now >= self._connect_deadline:
            self._connect_deadline = None
            failure_class = (
                FailureClass.OTHER_FATAL
                if self._transport_mode is TransportMode.ENGINE_MEDIATED
                else FailureClass.DIRECT_SINK_ERROR
            )
            self._handle_failure(
                failure_class,
                ConnectTimeoutError(
                    f"No ready signal within {self._connect_timeout_s}s", failure_class
                ),
            )
        if self._retry_deadline is not None and now >= self._retry_deadline:
            self._retry_deadline = None
            if self._state is SessionState.RECONNECTING and self._target is not None:
                self._log.info(
                    "Reconnect attempt {}/{} to {}",
                    self._reconnect_attempts, self._max_reconnect_attempts,
                    sanitize_url(self._target.url),
                )
                self._start_attempt()

    def _dispatch(self, message: object) -> None:
        if isinstance(message, _Connect):
            self._handle_connect(message)
        elif isinstance(message, _Ready):
            if message.generation == self._generation:
                self._handle_ready()
        elif isinstance(message, _Failed):
            if message.generation == self._generation:
                self._handle_failure(message.failure_class, message.cause)
        elif isinstance(message, _Disconnect):
            try:
                self._handle_disconnect()
            finally:
                message.done.set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _handle_connect(self, message: _Connect) -> None:
        if self._state not in (SessionState.IDLE, SessionState.DISCONNECTED):
            _settle(message.future, SessionStateError(f"connect() is not valid while {self._state.value}"))
            return
        if message.future.cancelled():
            return
        try:
            self._probe.select_transport(self._sink, message.target.protocol_hint)
        except CapabilityError as exc:
            self._log.error("Cannot connect to {}: {}", sanitize_url(message.target.url), exc)
            _settle(message.future, exc)
            return

        self._target = message.target
        self._pending = message.future
        self._reconnect_attempts = 0
        self._last_error = None
        self._set_state(SessionState.CONNECTING)
        self._start_attempt()

    def _start_attempt(self) -> None:
        """Attach the target through the transport the capability check selects."""
        self._teardown_transport()
        target = self._target
        if target is None:
            return
        try:
            mode = self._probe.select_transport(self._sink, target.protocol_hint)
        except CapabilityError as exc:
            # Environment changed under a running session; not retryable
            self._fail_pending(exc)
            self._give_up(exc)
            return

        self._generation += 1
        generation = self._generation
        self._transport_mode = mode
        self._connect_deadline = time.monotonic() + self._connect_timeout_s
        self._log.info("Connecting to {} ({})", sanitize_url(target.url), mode.value)

        if mode is TransportMode.DIRECT:
            self._sink.attach_source(
                target.url,
                on_ready=lambda: self._queue.put(_Ready(generation)),
                on_error=lambda exc: self._queue.put(
                    _Failed(generation, FailureClass.DIRECT_SINK_ERROR, exc)
                ),
            )
        else:
            engine = self._probe.engine_provider.create(self._engine_config)
            self._engine = engine
            engine.on(EngineEvent.MANIFEST_PARSED, lambda _data: self._queue.put(_Ready(generation)))
            engine.on(EngineEvent.ERROR, lambda data: self._on_engine_error(generation, data))
            engine.load_source(target.url)
            engine.attach_media(self._sink)
        self._publish()

    def _on_engine_error(self, generation: int, data: EngineErrorData) -> None:
        if not data.fatal:
            self._log.debug("Non-fatal engine error: {}", data.details)
            return
        self._queue.put(_Failed(generation, classify_engine_error(data), data))

    def _handle_ready(self) -> None:
        if self._state not in (SessionState.CONNECTING, SessionState.RECONNECTING, SessionState.CONNECTED):
            return
        self._connect_deadline = None
        if self._state is not SessionState.CONNECTED:
            self._log.info("Connected to {}", sanitize_url(self._target.url))
        self._reconnect_attempts = 0
        self._set_state(SessionState.CONNECTED)
        # State is published before the caller's future resolves
        if self._pending is not None:
            _settle(self._pending)
            self._pending = None

    def _handle_failure(self, failure_class: FailureClass, cause: Any) -> None:
        if self._state not in (SessionState.CONNECTING, SessionState.CONNECTED, SessionState.RECONNECTING):
            return

        self._fail_pending(
            cause
            if isinstance(cause, ConnectError)
            else ConnectError(f"Initial connection failed: {cause}", failure_class, cause)
        )

        if failure_class is FailureClass.NETWORK_ERROR and self._engine is not None:
            self._log.warning("Network error, resuming manifest load: {}", _describe(cause))
            self._schedule_recovery(self._engine.start_load)
            return
        if failure_class is FailureClass.MEDIA_ERROR and self._engine is not None:
            self._log.warning("Media error, recovering media pipeline: {}", _describe(cause))
            self._schedule_recovery(self._engine.recover_media_error)
            return

        self._consume_attempt(failure_class, cause)

    def _schedule_recovery(self, action: Callable[[], None]) -> None:
        """Run an in-place engine recovery after ``recovery_delay_ms``.

        A recovery already pending absorbs further errors, so an engine that
        keeps failing is retried at most once per delay.
        """
        if self._recovery_deadline is not None:
            return
        self._recovery_action = action
        self._recovery_deadline = time.monotonic() + self._recovery_delay_ms / 1000.0

    def _consume_attempt(self, failure_class: FailureClass, cause: Any) -> None:
        self._teardown_transport()
        self._connect_deadline = None
        self._reconnect_attempts += 1
        self._log.warning(
            "{} on {}: {} (attempt {}/{})",
            failure_class.value, sanitize_url(self._target.url), _describe(cause),
            self._reconnect_attempts, self._max_reconnect_attempts,
        )
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            self._log.error("Max reconnection attempts reached for {}", sanitize_url(self._target.url))
            self._give_up(ReconnectExhausted(self._target.url, self._reconnect_attempts))
            return
        self._retry_deadline = time.monotonic() + self._reconnect_delay_ms / 1000.0
        self._set_state(SessionState.RECONNECTING)

    def _give_up(self, error: Exception) -> None:
        """Terminal teardown: keep the attempt count and the error for observers."""
        self._teardown_transport()
        self._retry_deadline = None
        self._connect_deadline = None
        self._target = None
        self._last_error = error
        self._set_state(SessionState.DISCONNECTED)

    def _handle_disconnect(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        was_idle = self._state is SessionState.IDLE and self._target is None
        self._reset_to_idle()
        if not was_idle:
            self._log.info("Disconnected")

    def _reset_to_idle(self) -> None:
        self._teardown_transport()
        self._retry_deadline = None
        self._connect_deadline = None
        self._target = None
        self._reconnect_attempts = 0
        self._last_error = None
        self._set_state(SessionState.IDLE)

    def _teardown_transport(self) -> None:
        """Destroy the engine and detach the sink before anything new attaches."""
        self._generation += 1
        self._recovery_deadline = None
        self._recovery_action = None
        if self._engine is not None:
            self._engine.destroy()
            self._engine = None
        if self._sink.source is not None:
            self._sink.detach_source()
        self._transport_mode = TransportMode.UNATTACHED

    def _fail_pending(self, error: Exception) -> None:
        if self._pending is not None:
            _settle(self._pending, error)
            self._pending = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _snapshot(self) -> StreamStatus:
        return StreamStatus(
            is_connected=self._target is not None,
            transport_mode=self._transport_mode,
            url=self._target.url if self._target is not None else None,
            reconnect_attempts=self._reconnect_attempts,
            state=self._state,
            last_error=self._last_error,
        )

    def _publish(self) -> StreamStatus:
        status = self._snapshot()
        with self._status_lock:
            self._status = status
        return status

    def _set_state(self, state: SessionState) -> None:
        changed = state is not self._state
        self._state = state
        status = self._publish()
        if not changed:
            return
        for callback in list(self._listeners):
            try:
                callback(status)
            except Exception:
                self._log.opt(exception=True).error("Status listener failed")


def _settle(future: Future, error: Exception | None = None) -> None:
    """Resolve ``future`` unless the caller already cancelled it."""
    try:
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)
    except InvalidStateError:
        pass


def _describe(cause: Any) -> str:
    if isinstance(cause, EngineErrorData):
        return cause.details or cause.kind.value
    return str(cause)
