"""Tests for terminal_background_poller.py — background polling thread."""
from __future__ import annotations

import random
import time
from typing import Iterable

from quotestack.common_types import BatchResult, Quote
from quotestack.scheduler import RefreshScheduler
from terminal_background_poller import BackgroundPoller


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class _FakeFetcher:
    """Returns one quote per symbol; optionally fails every symbol or raises."""

    def __init__(self, *, fail_all: bool = False, raise_exc: Exception | None = None) -> None:
        self.fail_all = fail_all
        self.raise_exc = raise_exc
        self.calls: list[list[str]] = []

    def fetch_quotes(self, symbols: Iterable[str]) -> BatchResult:
        syms = list(symbols)
        self.calls.append(syms)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_all:
            return BatchResult(failures=[(s, "down") for s in syms])
        return BatchResult(quotes=[Quote(symbol=s, price=float(len(self.calls))) for s in syms])


def _scheduler(interval_s: float = 5.0) -> RefreshScheduler:
    return RefreshScheduler(interval_s, rng=random.Random(1))


# ---------------------------------------------------------------------------
# BackgroundPoller tests
# ---------------------------------------------------------------------------


class TestPollOnce:
    def test_enqueues_batch(self):
        fetcher = _FakeFetcher()
        bp = BackgroundPoller(fetcher, lambda: ["AAPL", "MSFT"], scheduler=_scheduler())
        batch = bp.poll_once()
        assert batch is not None and batch.ok
        assert fetcher.calls == [["AAPL", "MSFT"]]
        assert bp.poll_count == 1
        assert bp.last_poll_status == "2 ok / 0 failed"
        assert bp.drain() == [batch]
        assert bp.drain() == []

    def test_drain_oldest_first(self):
        bp = BackgroundPoller(_FakeFetcher(), lambda: ["AAPL"], scheduler=_scheduler())
        first = bp.poll_once()
        second = bp.poll_once()
        assert bp.drain() == [first, second]

    def test_symbols_read_each_cycle(self):
        symbols = ["AAPL"]
        fetcher = _FakeFetcher()
        bp = BackgroundPoller(fetcher, lambda: list(symbols), scheduler=_scheduler())
        bp.poll_once()
        symbols.append("MSFT")
        bp.poll_once()
        assert fetcher.calls == [["AAPL"], ["AAPL", "MSFT"]]

    def test_no_symbols(self):
        fetcher = _FakeFetcher()
        bp = BackgroundPoller(fetcher, lambda: [], scheduler=_scheduler())
        assert bp.poll_once() is None
        assert fetcher.calls == []
        assert bp.last_poll_status == "no symbols"

    def test_all_failed_still_enqueued(self):
        sched = _scheduler()
        bp = BackgroundPoller(_FakeFetcher(fail_all=True), lambda: ["AAPL"], scheduler=sched)
        batch = bp.poll_once()
        assert batch is not None and batch.all_failed
        assert bp.last_poll_status == "ERROR"
        assert "all 1 symbols failed" in bp.last_poll_error
        assert sched.last_refresh is None
        assert sched.needs_refresh() is False  # attempt still counted
        assert bp.drain() == [batch]

    def test_fetcher_exception_sanitized(self):
        exc = RuntimeError("GET https://x.example/?apikey=SECRET failed")
        bp = BackgroundPoller(_FakeFetcher(raise_exc=exc), lambda: ["AAPL"], scheduler=_scheduler())
        assert bp.poll_once() is None
        assert bp.last_poll_status == "ERROR"
        assert "SECRET" not in bp.last_poll_error
        assert "apikey=***" in bp.last_poll_error
        assert bp.drain() == []


class TestScheduling:
    def test_force_makes_due(self):
        sched = _scheduler()
        bp = BackgroundPoller(_FakeFetcher(), lambda: ["AAPL"], scheduler=sched)
        bp.poll_once()
        assert sched.needs_refresh() is False
        bp.force()
        assert sched.needs_refresh() is True

    def test_update_interval_clamped(self):
        sched = _scheduler()
        bp = BackgroundPoller(_FakeFetcher(), lambda: ["AAPL"], scheduler=sched)
        bp.update_interval(0.1)
        assert sched.interval_s == 1.0


class TestThreadLifecycle:
    def test_start_polls_and_stops(self):
        fetcher = _FakeFetcher()
        bp = BackgroundPoller(fetcher, lambda: ["AAPL"], scheduler=_scheduler(60.0))
        bp.start()
        try:
            deadline = time.monotonic() + 3.0
            while bp.poll_count == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert bp.is_alive
            assert bp.poll_count == 1
        finally:
            bp.stop()
            bp._thread.join(timeout=3.0)
        assert not bp.is_alive
        # 60 s interval: only the initial cycle ran
        assert len(fetcher.calls) == 1

    def test_start_is_idempotent(self):
        bp = BackgroundPoller(_FakeFetcher(), lambda: ["AAPL"], scheduler=_scheduler(60.0))
        bp.start()
        first = bp._thread
        try:
            bp.start()
            assert bp._thread is first
        finally:
            bp.stop()
            first.join(timeout=3.0)

    def test_not_alive_before_start(self):
        bp = BackgroundPoller(_FakeFetcher(), lambda: ["AAPL"], interval_s=5.0)
        assert bp.is_alive is False
