"""Tests for quotestack.history — rolling series and indicator math."""
from __future__ import annotations

import pytest

from quotestack.history import (
    MAX_HISTORY,
    SPARK_GLYPHS,
    PriceHistory,
    ema,
    macd,
    rsi,
    sma,
    sparkline,
)


class TestPriceHistory:
    def test_fifo_cap(self):
        h = PriceHistory()
        for i in range(MAX_HISTORY + 5):
            h.record("AAPL", float(i))
        series = h.prices("AAPL")
        assert len(series) == MAX_HISTORY
        assert series[0] == 5.0
        assert series[-1] == float(MAX_HISTORY + 4)

    def test_unknown_symbol_is_empty(self):
        h = PriceHistory()
        assert h.prices("NOPE") == []
        assert h.count("NOPE") == 0
        assert h.rsi("NOPE") is None
        assert h.sparkline("NOPE") == ""

    def test_forget_and_clear(self):
        h = PriceHistory(max_len=3)
        h.record("A", 1.0)
        h.record("B", 2.0)
        assert sorted(h.symbols) == ["A", "B"]
        h.forget("A")
        assert h.symbols == ["B"]
        h.clear()
        assert len(h) == 0

    def test_prices_returns_copy(self):
        h = PriceHistory()
        h.record("A", 1.0)
        h.prices("A").append(99.0)
        assert h.prices("A") == [1.0]

    def test_snapshot(self):
        h = PriceHistory()
        for i in range(30):
            h.record("A", 100.0 + i)
        snap = h.snapshot("A", sma_period=5)
        assert snap.rsi == 100.0
        assert snap.sma == pytest.approx(127.0)
        assert snap.sma_period == 5
        assert snap.macd is not None


class TestRsi:
    def test_insufficient_data(self):
        assert rsi([1.0] * 14) is None
        assert rsi([]) is None

    def test_monotonic_rise_is_100(self):
        assert rsi([float(i) for i in range(1, 16)]) == 100.0

    def test_monotonic_fall_is_0(self):
        assert rsi([float(i) for i in range(30, 0, -1)]) == pytest.approx(0.0)

    def test_balanced_moves_are_50(self):
        assert rsi([10.0, 11.0, 10.0], period=2) == pytest.approx(50.0)

    def test_flat_series_is_100(self):
        # no losses at all
        assert rsi([5.0] * 20) == 100.0

    def test_bounded(self):
        prices = [100.0, 103.0, 99.0, 104.0, 98.0, 97.0, 105.0, 110.0, 90.0,
                  95.0, 96.0, 101.0, 99.5, 100.5, 102.0, 98.0, 97.5]
        value = rsi(prices)
        assert value is not None
        assert 0.0 <= value <= 100.0


class TestMovingAverages:
    def test_sma(self):
        assert sma([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx(3.5)
        assert sma([1.0], 2) is None
        assert sma([1.0, 2.0], 0) is None

    def test_ema_seeded_with_sma(self):
        assert ema([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx(3.5)

    def test_ema_equals_sma_at_exact_length(self):
        assert ema([2.0, 4.0, 6.0], 3) == pytest.approx(4.0)

    def test_ema_insufficient(self):
        assert ema([1.0, 2.0], 3) is None


class TestMacd:
    def test_needs_26_points(self):
        assert macd([1.0] * 25) is None
        assert macd([1.0] * 26) is not None

    def test_flat_series_is_zero(self):
        m = macd([50.0] * 40)
        assert m is not None
        assert m.macd_line == pytest.approx(0.0)
        assert m.signal == pytest.approx(0.0)
        assert m.histogram == pytest.approx(0.0)

    def test_histogram_is_line_minus_signal(self):
        prices = [100.0 + (i % 7) * 1.5 + i * 0.3 for i in range(60)]
        m = macd(prices)
        assert m is not None
        assert m.histogram == pytest.approx(m.macd_line - m.signal)

    def test_uptrend_positive_line(self):
        m = macd([float(i) for i in range(1, 51)])
        assert m is not None
        assert m.macd_line > 0


class TestSparkline:
    def test_too_short(self):
        assert sparkline([]) == ""
        assert sparkline([1.0]) == ""

    def test_flat(self):
        assert sparkline([3.0, 3.0, 3.0]) == "▄▄▄"

    def test_extremes_map_to_first_and_last_glyph(self):
        line = sparkline([1.0, 2.0, 3.0, 4.0, 5.0])
        assert len(line) == 5
        assert line[0] == SPARK_GLYPHS[0]
        assert line[-1] == SPARK_GLYPHS[-1]

    def test_uses_last_five_points(self):
        line = sparkline([1000.0, 1.0, 2.0, 1.0, 2.0, 1.0])
        assert line == "▁█▁█▁"
