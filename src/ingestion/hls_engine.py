"""Embeddable HLS engine: loads the manifest, picks a level, feeds the sink."""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import httpx
import m3u8
from loguru import logger
from m3u8.parser import ParseError

from src.base import (
    BaseEngine,
    BaseSink,
    EngineConfig,
    EngineErrorData,
    EngineErrorKind,
    EngineEvent,
    EngineProvider,
)
from src.ingestion._utils import sanitize_url

_MANIFEST_HEADER = "#EXTM3U"


class HlsEngine(BaseEngine):
    """Adaptive-streaming engine for sinks without native HLS support.

    Once both a source and a sink are set, the engine fetches the playlist,
    selects a variant, attaches it to the sink and emits
    ``EngineEvent.MANIFEST_PARSED``. Failures are emitted as
    ``EngineEvent.ERROR`` with an ``EngineErrorData`` payload; the engine never
    retries by itself.
    """

    def __init__(self, config: EngineConfig | None = None, http_client: httpx.Client | None = None) -> None:
        self._config = config or EngineConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            timeout=self._config.manifest_timeout_s,
            follow_redirects=True,
        )
        self._listeners: dict[EngineEvent, list[Callable[[Any], None]]] = defaultdict(list)
        self._lock = threading.Lock()
        # Serializes every detach/attach on the sink, including the one in destroy()
        self._media_lock = threading.RLock()

        self._url: str | None = None
        self._sink: BaseSink | None = None
        self._level_url: str | None = None
        self._levels = 0
        self._destroyed = False
        # Bumped on every load / attach so superseded work drops its results
        self._load_token = 0
        self._media_token = 0

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def level_url(self) -> str | None:
        """Playlist URL currently attached to the sink."""
        return self._level_url

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def on(self, event: EngineEvent, callback: Callable[[Any], None]) -> None:
        with self._lock:
            self._listeners[event].append(callback)

    def load_source(self, url: str) -> None:
        with self._lock:
            self._url = url
            ready = self._sink is not None
        if ready:
            self.start_load()

    def attach_media(self, sink: BaseSink) -> None:
        with self._lock:
            if self._destroyed:
                return
            self._sink = sink
            ready = self._url is not None
        sink.configure_buffering(
            low_latency=self._config.low_latency_mode,
            back_buffer_s=self._config.back_buffer_length_s,
        )
        if ready:
            self.start_load()

    def start_load(self) -> None:
        """Fetch and parse the manifest, on a worker thread when enabled."""
        with self._lock:
            if self._destroyed or self._url is None:
                return
            self._load_token += 1
            token = self._load_token
            url = self._url
        if self._config.enable_worker:
            threading.Thread(
                target=self._load_manifest,
                args=(token, url),
                daemon=True,
                name="hls-manifest",
            ).start()
        else:
            self._load_manifest(token, url)

    def recover_media_error(self) -> None:
        """Re-attach the selected level to the sink."""
        with self._media_lock:
            with self._lock:
                if self._destroyed or self._sink is None or self._level_url is None:
                    return
                sink = self._sink
                level_url = self._level_url
            logger.debug("Recovering media pipeline on {}", sanitize_url(level_url))
            sink.detach_source()
            self._attach_level(sink, level_url)

    def destroy(self) -> None:
        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            self._load_token += 1
            self._media_token += 1
            self._listeners.clear()
            sink = self._sink
            self._sink = None
        # Waits for an in-flight attach, so nothing lands on the sink afterwards
        with self._media_lock:
            if sink is not None:
                sink.detach_source()
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_current(self, token: int) -> bool:
        with self._lock:
            return not self._destroyed and token == self._load_token

    def _load_manifest(self, token: int, url: str) -> None:
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            if self._is_current(token):
                self._emit_error(EngineErrorKind.NETWORK, f"manifestLoadError: {exc}")
            return

        text = response.text
        if not text.lstrip().startswith(_MANIFEST_HEADER):
            if self._is_current(token):
                self._emit_error(EngineErrorKind.OTHER, "manifestParsingError: missing #EXTM3U header")
            return

        manifest_url = str(response.url)
        try:
            playlist = m3u8.loads(text, uri=manifest_url)
            level_url = self._select_level(playlist, manifest_url)
        except (ParseError, ValueError, TypeError) as exc:
            if self._is_current(token):
                self._emit_error(EngineErrorKind.OTHER, f"manifestParsingError: {exc}")
            return
        if level_url is None:
            if self._is_current(token):
                self._emit_error(EngineErrorKind.OTHER, "manifestParsingError: no playable levels")
            return
        levels = len(playlist.playlists) if playlist.is_variant else 1

        with self._media_lock:
            with self._lock:
                if self._destroyed or token != self._load_token:
                    return
                self._level_url = level_url
                self._levels = levels
                sink = self._sink
            logger.debug(
                "Parsed manifest {} ({} levels), playing {}",
                sanitize_url(url), levels, sanitize_url(level_url),
            )
            if sink is not None:
                sink.detach_source()
                self._attach_level(sink, level_url)

        if self._is_current(token):
            self._emit(EngineEvent.MANIFEST_PARSED, {"levels": levels, "url": level_url})

    def _select_level(self, playlist: m3u8.M3U8, manifest_url: str) -> str | None:
        """Highest bandwidth within ``max_bandwidth``, or the lowest if none fit."""
        if not playlist.is_variant:
            return manifest_url if playlist.segments else None

        variants = [p for p in playlist.playlists if p.uri]
        if not variants:
            return None

        def bandwidth(p) -> int:
            return (p.stream_info.bandwidth or 0) if p.stream_info else 0

        cap = self._config.max_bandwidth
        fitting = [p for p in variants if cap is None or bandwidth(p) <= cap]
        chosen = max(fitting, key=bandwidth) if fitting else min(variants, key=bandwidth)
        return chosen.absolute_uri

    def _attach_level(self, sink: BaseSink, level_url: str) -> None:
        """Attach ``level_url`` to ``sink``. Callers hold ``_media_lock``."""
        with self._lock:
            if self._destroyed:
                return
            self._media_token += 1
            token = self._media_token
        sink.attach_source(
            level_url,
            on_ready=lambda: self._on_media_ready(token, level_url),
            on_error=lambda exc: self._on_media_error(token, exc),
        )

    def _on_media_ready(self, token: int, level_url: str) -> None:
        if token == self._media_token:
            logger.debug("Media attached for {}", sanitize_url(level_url))

    def _on_media_error(self, token: int, exc: Exception) -> None:
        with self._lock:
            current = not self._destroyed and token == self._media_token
        if current:
            self._emit_error(EngineErrorKind.MEDIA, f"mediaError: {exc}")

    def _emit_error(self, kind: EngineErrorKind, details: str) -> None:
        self._emit(EngineEvent.ERROR, EngineErrorData(kind=kind, fatal=True, details=details))

    def _emit(self, event: EngineEvent, payload: Any) -> None:
        with self._lock:
            if self._destroyed:
                return
            callbacks = list(self._listeners.get(event, ()))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.opt(exception=True).error("Engine listener for {} failed", event.value)


class HlsEngineProvider(EngineProvider):
    """Creates ``HlsEngine`` instances, optionally sharing one HTTP client.

    ``enabled=False`` models an environment where the engine is not shipped.
    """

    def __init__(self, http_client: httpx.Client | None = None, enabled: bool = True) -> None:
        self._http_client = http_client
        self._enabled = enabled

    def is_supported(self) -> bool:
        return self._enabled

    def create(self, config: EngineConfig) -> HlsEngine:
        return HlsEngine(config, http_client=self._http_client)
