"""Refresh scheduling with jittered intervals.

Decides when the next fetch cycle is due.  The effective interval is
re-drawn after every attempt from 90–100 % of the configured interval so
repeated cycles (and several running instances) drift apart instead of
hitting the provider on the same wall-clock cadence.

Attempts count as well as successes: a failed cycle still pushes the
next one out by a full interval, which prevents retry storms while the
provider is down.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MIN_INTERVAL_S = 1.0
DEFAULT_JITTER_PCT = 0.10


def clamp_interval(interval_s: float) -> float:
    """Clamp *interval_s* to the minimum polling floor."""
    try:
        value = float(interval_s)
    except (TypeError, ValueError):
        return MIN_INTERVAL_S
    if value != value or value < MIN_INTERVAL_S:  # NaN or below floor
        return MIN_INTERVAL_S
    return value


class RefreshScheduler:
    """Tracks refresh/attempt instants and answers ``needs_refresh()``.

    Parameters
    ----------
    interval_s : float
        Nominal refresh interval (clamped to ``MIN_INTERVAL_S``).
    jitter_pct : float
        Maximum fraction shaved off the interval (0.10 → 90–100 %).
    clock : callable
        Monotonic clock returning seconds (injectable for tests).
    rng : random.Random, optional
        Jitter source.  Defaults to a generator seeded from the current
        time so separate processes draw different sequences.
    """

    def __init__(
        self,
        interval_s: float,
        *,
        jitter_pct: float = DEFAULT_JITTER_PCT,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._interval_s = clamp_interval(interval_s)
        self.jitter_pct = max(0.0, min(float(jitter_pct), 1.0))
        self._clock = clock
        self._rng = rng if rng is not None else random.Random(time.time_ns())
        self.last_refresh: Optional[float] = None
        self.last_attempt: Optional[float] = None
        self.effective_interval_s: float = self._draw_interval()

    # ── Configuration ───────────────────────────────────────────

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def set_interval(self, interval_s: float) -> None:
        """Change the nominal interval at runtime."""
        self._interval_s = clamp_interval(interval_s)
        self.effective_interval_s = self._draw_interval()
        logger.info("Refresh interval set to %.1fs", self._interval_s)

    def _draw_interval(self) -> float:
        u = self._rng.random()
        return self._interval_s * (1.0 - self.jitter_pct * u)

    # ── Bookkeeping ─────────────────────────────────────────────

    def mark_attempt(self) -> None:
        """Record a fetch attempt (success or failure) and re-draw jitter."""
        self.last_attempt = self._clock()
        self.effective_interval_s = self._draw_interval()

    def mark_success(self) -> None:
        now = self._clock()
        self.last_refresh = now
        if self.last_attempt is None:
            self.last_attempt = now

    def force_refresh(self) -> None:
        """Make the next ``needs_refresh()`` check return True."""
        self.last_refresh = None
        self.last_attempt = None

    # ── Queries ─────────────────────────────────────────────────

    def _reference(self) -> Optional[float]:
        marks = [m for m in (self.last_attempt, self.last_refresh) if m is not None]
        return max(marks) if marks else None

    def needs_refresh(self) -> bool:
        ref = self._reference()
        if ref is None:
            return True
        return (self._clock() - ref) >= self.effective_interval_s

    def seconds_until_due(self) -> float:
        ref = self._reference()
        if ref is None:
            return 0.0
        return max(0.0, self.effective_interval_s - (self._clock() - ref))

    def seconds_since_refresh(self) -> Optional[float]:
        if self.last_refresh is None:
            return None
        return self._clock() - self.last_refresh
