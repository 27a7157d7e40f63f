"""Transport selection for a (sink, protocol) pair."""

from __future__ import annotations

from urllib.parse import urlparse

from src.base import HLS_MIME_TYPE, BaseSink, EngineProvider, ProtocolHint, TransportMode
from src.ingestion.errors import CapabilityError

_MANIFEST_SUFFIXES = (".m3u8", ".m3u")


def infer_protocol(url: str, hint: ProtocolHint | str | None = None) -> ProtocolHint:
    """Resolve the protocol for ``url``.

    An explicit hint wins. Otherwise a path ending in a manifest suffix is
    HLS and everything else is progressive HTTP. Query strings are ignored.
    """
    if isinstance(hint, ProtocolHint):
        return hint
    if hint is not None:
        try:
            return ProtocolHint(hint.lower())
        except ValueError:
            raise ValueError(f"Unknown protocol hint {hint!r}") from None
    path = urlparse(url).path.lower()
    if path.endswith(_MANIFEST_SUFFIXES):
        return ProtocolHint.HLS
    return ProtocolHint.HTTP


class CapabilityProbe:
    """Pure decision over capability flags; performs no I/O.

    ``engine_provider`` models whether an adaptive-streaming engine library is
    present. ``None`` means no engine exists in this environment.
    """

    def __init__(self, engine_provider: EngineProvider | None = None) -> None:
        self._engine_provider = engine_provider

    @property
    def engine_provider(self) -> EngineProvider | None:
        return self._engine_provider

    def select_transport(self, sink: BaseSink, protocol: ProtocolHint) -> TransportMode:
        """Pick the transport mode or raise ``CapabilityError``."""
        if protocol is ProtocolHint.HTTP:
            return TransportMode.DIRECT
        if sink.can_play_type(HLS_MIME_TYPE):
            return TransportMode.DIRECT
        if self._engine_provider is not None and self._engine_provider.is_supported():
            return TransportMode.ENGINE_MEDIATED
        raise CapabilityError(
            f"{protocol.value.upper()} is not supported: sink has no native support "
            "and no streaming engine is available"
        )
