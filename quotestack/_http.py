"""Shared HTTP helpers for the quote adapters.

Centralises client construction (browser-like identification, default
timeout) and URL/exception sanitisation so that API keys are never
logged in plain text, regardless of which adapter raises the error.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any

import httpx

from .errors import ClientInitError, QuoteParseError, sanitize

logger = logging.getLogger(__name__)

# Yahoo rejects requests without a browser-ish User-Agent.
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# ── Once-per-endpoint error suppression ─────────────────────────
# 401/403 from the enrichment endpoint usually means the key's plan
# does not cover it.  Warn once, then suppress to avoid log spam.
_WARNED_ENDPOINTS: set[str] = set()
_warned_lock = threading.Lock()

_TIER_LIMITED_CODES: frozenset[int] = frozenset({401, 402, 403})


def build_client(timeout_s: float, **kwargs: Any) -> httpx.Client:
    """Create the shared ``httpx.Client``.

    Raises ``ClientInitError`` when the client cannot be constructed
    (e.g. malformed proxy / TLS settings in the environment).
    """
    try:
        return httpx.Client(
            timeout=httpx.Timeout(timeout_s),
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
            **kwargs,
        )
    except Exception as exc:
        raise ClientInitError(f"Failed to create HTTP client: {_sanitize_exc(exc)}") from exc


def _sanitize_url(url: str) -> str:
    """Remove apikey/token query params from a URL for safe logging."""
    return sanitize(url)


def _sanitize_exc(exc: BaseException) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return sanitize(str(exc))


def describe_transport_error(exc: httpx.HTTPError) -> str:
    """Human-readable one-liner for an httpx transport failure."""
    if isinstance(exc, httpx.TimeoutException):
        return "Request timed out"
    if isinstance(exc, httpx.ConnectError):
        return f"Connection failed: {_sanitize_exc(exc) or type(exc).__name__}"
    return f"{type(exc).__name__}: {_sanitize_exc(exc)}"


def safe_json(r: httpx.Response, *, symbol: str = "") -> Any:
    """Parse JSON response; raise QuoteParseError with sanitized URL on failure."""
    ct = r.headers.get("content-type", "")
    try:
        return r.json()
    except (json.JSONDecodeError, ValueError):
        raise QuoteParseError(
            f"Provider returned non-JSON for {symbol} (content-type={ct!r}, "
            f"status={r.status_code}, url={_sanitize_url(str(r.url))})",
            symbol=symbol,
        ) from None


def log_enrichment_miss(label: str, exc: Exception) -> None:
    """Log a failed best-effort lookup.

    Plan-limited responses warn once per *label* and then drop to DEBUG;
    everything else is DEBUG (enrichment misses are expected).
    """
    msg = _sanitize_exc(exc)
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in _TIER_LIMITED_CODES:
        with _warned_lock:
            already_warned = label in _WARNED_ENDPOINTS
            _WARNED_ENDPOINTS.add(label)
        if not already_warned:
            logger.warning(
                "%s lookup failed (HTTP %d) – endpoint not available on "
                "your API plan; suppressing further warnings",
                label, exc.response.status_code,
            )
            return
    logger.debug("%s lookup failed: %s", label, msg)
