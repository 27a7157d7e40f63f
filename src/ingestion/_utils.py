"""Shared helpers for the ingestion layer."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def sanitize_url(url: str | None) -> str:
    """Strip credentials from a URL for safe logging."""
    if not url:
        return "<none>"
    try:
        parsed = urlparse(url)
        if parsed.username or parsed.password:
            # Replace netloc user:pass with ***
            safe_netloc = "***:***@" + (parsed.hostname or "")
            if parsed.port:
                safe_netloc += f":{parsed.port}"
            return urlunparse(parsed._replace(netloc=safe_netloc))
    except ValueError:
        pass
    return url
