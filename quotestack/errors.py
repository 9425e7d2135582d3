"""Structured error taxonomy for quotestack.

Provides a small exception hierarchy so callers can tell per-symbol
failures (recovered into a ``BatchResult``) apart from fatal start-up
problems (bad config, no HTTP client), plus the bounded-length message
helper used for anything shown to the user.
"""
from __future__ import annotations

import re

# Display cap for error / warning banners.
MAX_MESSAGE_LEN = 100
ELLIPSIS = "..."

_SECRET_RE = re.compile(r"(apikey|api_key|token|key)=[^&\s]+", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class QuoteStackError(Exception):
    """Base error for all quotestack subsystems."""
    pass


class QuoteFetchError(QuoteStackError):
    """Provider unreachable, timed out, returned a non-2xx status or an
    explicit error payload."""

    def __init__(self, message: str, *, symbol: str = ""):
        self.symbol = symbol
        super().__init__(message)


class QuoteParseError(QuoteStackError):
    """Provider answered, but the payload could not be turned into a Quote."""

    def __init__(self, message: str, *, symbol: str = ""):
        self.symbol = symbol
        super().__init__(message)


class ConfigError(QuoteStackError):
    """Invalid configuration file or value."""
    pass


class ClientInitError(QuoteStackError):
    """The HTTP client could not be constructed. Fatal at start-up."""
    pass


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------

def sanitize(text: str) -> str:
    """Strip API keys/tokens from *text* for safe logging and display."""
    return _SECRET_RE.sub(r"\1=***", text)


def truncate_message(text: str, max_len: int = MAX_MESSAGE_LEN) -> str:
    """Cut *text* to *max_len* characters, marking the cut with ``...``."""
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - len(ELLIPSIS))] + ELLIPSIS
