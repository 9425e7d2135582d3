"""Rolling price history and technical indicators.

Provides:
  PriceHistory          per-symbol FIFO series, capped at 100 points
  rsi                   Wilder-smoothed RSI (period 14, needs 15 points)
  sma                   simple mean of the last N points
  ema                   SMA-seeded exponential moving average
  macd                  EMA12 − EMA26 with an approximate 9-period signal
  sparkline             5-point trend glyphs (▁▂▃▄▅▆▇█)

Every indicator returns ``None`` when there is not enough history; a
guessed value is never produced.  All functions operate on plain
sequences of floats and never block.
"""
from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

MAX_HISTORY = 100

RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
DEFAULT_SMA_PERIOD = 20

SPARK_GLYPHS = "▁▂▃▄▅▆▇█"
SPARK_WINDOW = 5
_SPARK_FLAT = SPARK_GLYPHS[len(SPARK_GLYPHS) // 2 - 1]  # "▄"


@dataclass(frozen=True)
class MacdSnapshot:
    """MACD triple.

    ``signal`` is an approximation: an EMA-style smoothing over the MACD
    values recomputed for the last 9 prefixes of the series, not a full
    9-period EMA of the whole MACD history.  Do not expect bit-for-bit
    agreement with charting packages.
    """

    signal: float
    macd_line: float
    histogram: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: Optional[float]
    sma: Optional[float]
    sma_period: int
    macd: Optional[MacdSnapshot]


# ═══════════════════════════════════════════════════════════════════════════
# Pure indicator math
# ═══════════════════════════════════════════════════════════════════════════

def rsi(prices: Sequence[float], period: int = RSI_PERIOD) -> Optional[float]:
    """Wilder's RSI.

    The first average gain/loss is the simple mean of the first *period*
    deltas; each later delta is folded in with
    ``avg = (avg * (period - 1) + value) / period``.
    A zero average loss yields 100.
    """
    if period < 1 or len(prices) < period + 1:
        return None
    deltas = [b - a for a, b in zip(prices, prices[1:])]
    gains = [d if d > 0 else 0.0 for d in deltas]
    losses = [-d if d < 0 else 0.0 for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for g, l in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + g) / period
        avg_loss = (avg_loss * (period - 1) + l) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return max(0.0, min(100.0, 100.0 - 100.0 / (1.0 + rs)))


def sma(prices: Sequence[float], period: int) -> Optional[float]:
    """Mean of the most recent *period* prices."""
    if period < 1 or len(prices) < period:
        return None
    window = prices[-period:]
    return sum(window) / period


def ema(prices: Sequence[float], period: int) -> Optional[float]:
    """EMA seeded with the SMA of the oldest *period* window."""
    if period < 1 or len(prices) < period:
        return None
    k = 2.0 / (period + 1)
    value = sum(prices[:period]) / period
    for p in prices[period:]:
        value = (p - value) * k + value
    return value


def _macd_line(prices: Sequence[float]) -> Optional[float]:
    fast = ema(prices, MACD_FAST)
    slow = ema(prices, MACD_SLOW)
    if fast is None or slow is None:
        return None
    return fast - slow


def macd(prices: Sequence[float]) -> Optional[MacdSnapshot]:
    """MACD line, approximate signal and histogram (needs 26 points)."""
    n = len(prices)
    if n < MACD_SLOW:
        return None
    line = _macd_line(prices)
    if line is None:
        return None

    # MACD values for the trailing prefixes (up to 9, oldest first)
    trail: List[float] = []
    for end in range(max(MACD_SLOW, n - MACD_SIGNAL + 1), n + 1):
        v = _macd_line(prices[:end])
        if v is not None:
            trail.append(v)

    k = 2.0 / (MACD_SIGNAL + 1)
    signal = trail[0]
    for v in trail[1:]:
        signal = (v - signal) * k + signal
    return MacdSnapshot(signal=signal, macd_line=line, histogram=line - signal)


def sparkline(prices: Sequence[float]) -> str:
    """Render the last 5 prices as bar glyphs, min–max scaled in-window."""
    window = list(prices[-SPARK_WINDOW:])
    if len(window) < 2:
        return ""
    lo, hi = min(window), max(window)
    if hi == lo or math.isnan(hi - lo):
        return _SPARK_FLAT * len(window)
    top = len(SPARK_GLYPHS) - 1
    return "".join(SPARK_GLYPHS[round((p - lo) / (hi - lo) * top)] for p in window)


# ═══════════════════════════════════════════════════════════════════════════
# Per-symbol history
# ═══════════════════════════════════════════════════════════════════════════

class PriceHistory:
    """Bounded, append-only price series per symbol (oldest evicted first)."""

    def __init__(self, max_len: int = MAX_HISTORY) -> None:
        self.max_len = max(1, int(max_len))
        self._series: Dict[str, Deque[float]] = {}

    def record(self, symbol: str, price: float) -> None:
        buf = self._series.get(symbol)
        if buf is None:
            buf = deque(maxlen=self.max_len)
            self._series[symbol] = buf
        buf.append(float(price))

    def prices(self, symbol: str) -> List[float]:
        return list(self._series.get(symbol, ()))

    def count(self, symbol: str) -> int:
        return len(self._series.get(symbol, ()))

    @property
    def symbols(self) -> List[str]:
        return list(self._series)

    def forget(self, symbol: str) -> None:
        self._series.pop(symbol, None)

    def clear(self) -> None:
        self._series.clear()

    def __len__(self) -> int:
        return len(self._series)

    # ── Indicators ──────────────────────────────────────────────

    def rsi(self, symbol: str, period: int = RSI_PERIOD) -> Optional[float]:
        return rsi(self.prices(symbol), period)

    def sma(self, symbol: str, period: int) -> Optional[float]:
        return sma(self.prices(symbol), period)

    def ema(self, symbol: str, period: int) -> Optional[float]:
        return ema(self.prices(symbol), period)

    def macd(self, symbol: str) -> Optional[MacdSnapshot]:
        return macd(self.prices(symbol))

    def sparkline(self, symbol: str) -> str:
        return sparkline(self.prices(symbol))

    def snapshot(self, symbol: str, sma_period: int = DEFAULT_SMA_PERIOD) -> IndicatorSnapshot:
        series = self.prices(symbol)
        return IndicatorSnapshot(
            rsi=rsi(series),
            sma=sma(series, sma_period),
            sma_period=sma_period,
            macd=macd(series),
        )
