"""Tests for quotestack.cache — TTL semantics."""
from __future__ import annotations

import pytest

from quotestack.cache import DEFAULT_TTL_S, QuoteCache
from quotestack.common_types import Quote


class FakeClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def cache(clock):
    return QuoteCache(clock=clock)


class TestQuoteCache:
    def test_default_ttl(self):
        assert QuoteCache().ttl_s == DEFAULT_TTL_S == 30.0

    def test_hit_within_ttl(self, cache, clock):
        q = Quote.from_prices("AAPL", 101.0, 100.0)
        cache.put(q)
        clock.t = 29.9
        assert cache.get("AAPL") is q
        assert "AAPL" in cache

    def test_stale_at_exactly_ttl(self, cache, clock):
        cache.put(Quote(symbol="AAPL"))
        clock.t = 30.0
        assert cache.get("AAPL") is None
        assert "AAPL" not in cache
        # stale entry stays until purged
        assert len(cache) == 1

    def test_miss(self, cache):
        assert cache.get("NOPE") is None
        assert "NOPE" not in cache
        assert cache.age_s("NOPE") is None

    def test_put_refreshes_stamp(self, cache, clock):
        cache.put(Quote(symbol="AAPL", price=1.0))
        clock.t = 25.0
        cache.put(Quote(symbol="AAPL", price=2.0))
        clock.t = 50.0
        hit = cache.get("AAPL")
        assert hit is not None and hit.price == 2.0
        assert cache.fetched_at("AAPL") == 25.0

    def test_age(self, cache, clock):
        cache.put(Quote(symbol="AAPL"))
        clock.t = 12.5
        assert cache.age_s("AAPL") == pytest.approx(12.5)

    def test_age_reported_after_stale_read(self, cache, clock):
        cache.put(Quote(symbol="AAPL"))
        clock.t = 40.0
        assert cache.get("AAPL") is None
        assert cache.age_s("AAPL") == pytest.approx(40.0)
        assert cache.purge_expired() == 1
        assert cache.age_s("AAPL") is None

    def test_purge_expired(self, cache, clock):
        cache.put(Quote(symbol="OLD"))
        clock.t = 20.0
        cache.put(Quote(symbol="NEW"))
        clock.t = 31.0
        assert cache.purge_expired() == 1
        assert len(cache) == 1
        assert cache.get("NEW") is not None

    def test_clear(self, cache):
        cache.put(Quote(symbol="A"))
        cache.put(Quote(symbol="B"))
        cache.clear()
        assert len(cache) == 0

    def test_non_string_membership(self, cache):
        assert 42 not in cache
