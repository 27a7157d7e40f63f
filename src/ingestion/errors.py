"""Exception taxonomy for stream sessions."""

from __future__ import annotations

from src.base import FailureClass
from src.ingestion._utils import sanitize_url


class StreamError(Exception):
    """Base class for all stream ingestion errors."""


class CapabilityError(StreamError):
    """No viable transport exists for the requested protocol. Never retried."""


class SessionStateError(StreamError):
    """Operation not valid in the session's current state."""


class SinkNotAttachedError(StreamError):
    """A capture handle was requested while no source is attached."""


class ConnectError(StreamError):
    """The initial negotiation failed.

    Carries the classification of the signal that failed it so callers can
    tell a network hiccup from a broken pipeline.
    """

    def __init__(self, message: str, failure_class: FailureClass, cause: object = None) -> None:
        super().__init__(message)
        self.failure_class = failure_class
        self.cause = cause


class ConnectTimeoutError(ConnectError):
    """No ready signal arrived within the connect timeout."""


class ReconnectExhausted(StreamError):
    """The reconnect budget is spent; the session is terminally disconnected."""

    def __init__(self, url: str, attempts: int) -> None:
        super().__init__(f"Gave up on {sanitize_url(url)} after {attempts} reconnect attempts")
        self.url = url
        self.attempts = attempts
