"""Short-TTL cache of last-known-good quotes.

Entries are keyed by symbol and stamped with the fetch instant.  A read
past the TTL behaves exactly like a miss, but the entry stays (so its
age can still be reported) until ``purge_expired`` removes it.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from .common_types import Quote

DEFAULT_TTL_S = 30.0


class QuoteCache:
    """symbol → (Quote, fetched_at) with a fixed time-to-live."""

    def __init__(
        self,
        ttl_s: float = DEFAULT_TTL_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._entries: Dict[str, Tuple[Quote, float]] = {}
        self._lock = threading.Lock()

    def put(self, quote: Quote) -> None:
        with self._lock:
            self._entries[quote.symbol] = (quote, self._clock())

    def get(self, symbol: str) -> Optional[Quote]:
        with self._lock:
            entry = self._entries.get(symbol)
            if entry is None:
                return None
            quote, fetched_at = entry
            if self._clock() - fetched_at >= self.ttl_s:
                return None
            return quote

    def fetched_at(self, symbol: str) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(symbol)
        return entry[1] if entry else None

    def age_s(self, symbol: str) -> Optional[float]:
        """Seconds since *symbol* was stored (even if already stale)."""
        ts = self.fetched_at(symbol)
        return None if ts is None else self._clock() - ts

    def purge_expired(self) -> int:
        """Drop every entry past the TTL. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [s for s, (_, ts) in self._entries.items() if now - ts >= self.ttl_s]
            for s in expired:
                del self._entries[s]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and self.get(symbol) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
