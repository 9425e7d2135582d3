"""Symbol validation and shorthand expansion.

Runs before any symbol reaches a URL: ``validate`` rejects anything
outside a small, URL-safe charset, ``expand`` rewrites crypto shorthands
(``BTC.X`` / ``BTC``) to the provider's ``BTC-USD`` form.
"""

from __future__ import annotations

from typing import Iterable, List

MAX_SYMBOL_LEN = 20

# Besides ASCII letters/digits: share classes (BRK-B), crypto pairs
# (BTC-USD), indices (^GSPC) and FX pairs (EURUSD=X).
_ALLOWED_PUNCT = frozenset("-.^=")

CRYPTO_SUFFIX = ".X"

CRYPTO_SHORTCUTS: frozenset[str] = frozenset({
    "BTC", "ETH", "SOL", "DOGE", "XRP", "ADA", "DOT",
    "MATIC", "LINK", "UNI", "AVAX", "ATOM", "LTC",
})


def _is_ascii_alnum(ch: str) -> bool:
    return ch.isascii() and ch.isalnum()


def validate(symbol: str) -> bool:
    """Return True if *symbol* is safe to send to the provider."""
    if not symbol or len(symbol) > MAX_SYMBOL_LEN:
        return False
    return all(_is_ascii_alnum(ch) or ch in _ALLOWED_PUNCT for ch in symbol)


def expand(symbol: str) -> str:
    """Expand crypto shorthands; anything else is returned unchanged."""
    if symbol.endswith(CRYPTO_SUFFIX):
        return f"{symbol[: -len(CRYPTO_SUFFIX)]}-USD"
    if len(symbol) <= 5 and symbol.isascii() and symbol.isalpha() and symbol.isupper():
        if symbol in CRYPTO_SHORTCUTS:
            return f"{symbol}-USD"
    return symbol


def normalize_symbols(symbols: Iterable[str]) -> List[str]:
    """Strip, expand and dedupe *symbols*, preserving first-seen order."""
    out: List[str] = []
    seen: set[str] = set()
    for raw in symbols:
        if not isinstance(raw, str):
            continue
        sym = raw.strip()
        if not sym:
            continue
        sym = expand(sym)
        if sym not in seen:
            seen.add(sym)
            out.append(sym)
    return out
