"""Tests for quotestack.app_state — refresh merge, sorting, view state, portfolio."""
from __future__ import annotations

import math
from typing import Iterable, List
from unittest.mock import patch

import pytest

from quotestack.alerts import AlertCondition, AlertEngine
from quotestack.app_state import AppState, sort_quotes
from quotestack.common_types import (
    BatchResult,
    Holding,
    Quote,
    QuoteType,
    SortDirection,
    SortOrder,
)
from quotestack.config import Config, DisplaySettings, GeneralSettings, WatchConfig


class FakeClock:
    def __init__(self) -> None:
        self.t = 100.0

    def __call__(self) -> float:
        return self.t


class FakeFetcher:
    """Replays canned batches; records requested symbol lists."""

    def __init__(self, *batches: BatchResult) -> None:
        self._batches = list(batches)
        self.calls: List[List[str]] = []

    def fetch_quotes(self, symbols: Iterable[str]) -> BatchResult:
        self.calls.append(list(symbols))
        return self._batches.pop(0)


def _q(symbol: str, price: float = 100.0, prev: float = 100.0, **kw) -> Quote:
    return Quote.from_prices(symbol, price, prev, name=kw.pop("name", f"{symbol} Inc"), **kw)


def _app(symbols=("AAPL", "MSFT", "TSLA"), *batches: BatchResult, **kw) -> AppState:
    kw.setdefault("clock", FakeClock())
    return AppState(list(symbols), fetcher=FakeFetcher(*batches), **kw)


# ---------------------------------------------------------------------------
# Refresh cycle
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_success_replaces_sorts_and_records(self):
        batch = BatchResult(quotes=[_q("AAPL", 101), _q("MSFT", 105), _q("TSLA", 95)])
        app = _app(("AAPL", "MSFT", "TSLA"), batch)
        triggered = app.refresh()
        assert triggered == []
        assert [q.symbol for q in app.quotes] == ["MSFT", "AAPL", "TSLA"]
        assert app.iteration == 1
        assert app.error is None and app.warning is None
        assert app.history.prices("AAPL") == [101.0]
        assert app.cache.get("MSFT") is not None
        assert app.data_age_s("AAPL") == 0.0

    def test_requests_active_symbols(self):
        app = _app(("AAPL", "BTC"), BatchResult(quotes=[_q("AAPL")]))
        app.refresh()
        assert app.fetcher.calls == [["AAPL", "BTC-USD"]]

    def test_total_failure_keeps_previous_quotes(self):
        long_reason = "x" * 200
        app = _app(
            ("AAPL",),
            BatchResult(quotes=[_q("AAPL", 101)]),
            BatchResult(failures=[("AAPL", long_reason)]),
        )
        app.refresh()
        app.force_refresh()
        assert app.refresh() == []
        assert [q.symbol for q in app.quotes] == ["AAPL"]
        assert app.error is not None
        assert app.error.startswith("API Error: AAPL: ")
        assert len(app.error) == 100
        assert app.error.endswith("...")
        assert app.iteration == 1

    def test_partial_failure_carries_fresh_cached_quote(self):
        clock = FakeClock()
        app = _app(
            ("AAPL", "MSFT"),
            BatchResult(quotes=[_q("AAPL", 101), _q("MSFT", 102)]),
            BatchResult(quotes=[_q("AAPL", 103)], failures=[("MSFT", "timeout")]),
            clock=clock,
        )
        app.refresh()
        clock.t += 10
        app.refresh()
        by_sym = {q.symbol: q for q in app.quotes}
        assert by_sym["MSFT"].price == 102
        assert app.warning == "1 symbol(s) failed: MSFT: timeout"
        assert app.error is None
        # history only grows for successes
        assert app.history.prices("MSFT") == [102.0]
        assert app.history.prices("AAPL") == [101.0, 103.0]

    def test_partial_failure_drops_stale_cached_quote(self):
        clock = FakeClock()
        app = _app(
            ("AAPL", "MSFT"),
            BatchResult(quotes=[_q("AAPL"), _q("MSFT")]),
            BatchResult(quotes=[_q("AAPL")], failures=[("MSFT", "timeout")]),
            clock=clock,
        )
        app.refresh()
        clock.t += 31
        app.refresh()
        assert [q.symbol for q in app.quotes] == ["AAPL"]

    def test_total_failure_clears_previous_warning(self):
        app = _app(
            ("AAPL", "MSFT"),
            BatchResult(quotes=[_q("AAPL")], failures=[("MSFT", "timeout")]),
            BatchResult(failures=[("AAPL", "down"), ("MSFT", "down")]),
        )
        app.refresh()
        assert app.warning is not None
        app.refresh()
        assert app.error == "API Error: AAPL: down; MSFT: down"
        assert app.warning is None

    def test_batch_for_other_group_is_not_current(self):
        app = _app(("AAPL", "MSFT", "ETH"), groups={"crypto": ["ETH"]})
        stale = BatchResult(quotes=[_q("AAPL")], failures=[("MSFT", "timeout")])
        assert app.is_current_batch(stale) is True
        app.set_group("crypto")
        assert app.is_current_batch(stale) is False
        assert app.is_current_batch(BatchResult(quotes=[_q("ETH-USD")])) is True

    def test_batch_with_removed_symbol_is_not_current(self):
        app = _app(("AAPL", "MSFT"))
        batch = BatchResult(quotes=[_q("AAPL"), _q("MSFT")])
        app.remove_symbol("MSFT")
        assert app.is_current_batch(batch) is False

    def test_success_clears_error(self):
        app = _app(
            ("AAPL",),
            BatchResult(failures=[("AAPL", "down")]),
            BatchResult(quotes=[_q("AAPL")]),
        )
        app.refresh()
        assert app.error == "API Error: AAPL: down"
        app.refresh()
        assert app.error is None

    def test_alerts_evaluated_on_fresh_quotes(self):
        alerts = AlertEngine()
        alerts.add_alert("AAPL", AlertCondition.ABOVE, 100)
        app = _app(("AAPL",), BatchResult(quotes=[_q("AAPL", 150)]), alerts=alerts)
        hits = app.refresh()
        assert [h.symbol for h in hits] == ["AAPL"]
        assert app.triggered_alerts == hits

    def test_empty_active_set_skips_fetch(self):
        app = _app(())
        assert app.refresh() == []
        assert app.fetcher.calls == []

    def test_no_fetcher(self):
        app = AppState(["AAPL"])
        with pytest.raises(RuntimeError):
            app.refresh()

    def test_acknowledge(self):
        app = _app(("AAPL",), BatchResult(failures=[("AAPL", "down")]))
        app.refresh()
        app.acknowledge()
        assert app.error is None

    def test_scheduler_not_due_after_refresh(self):
        app = _app(("AAPL",), BatchResult(quotes=[_q("AAPL")]))
        assert app.needs_refresh()
        app.refresh()
        assert not app.needs_refresh()
        assert app.time_since_refresh() == "0s ago"


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------


class TestSorting:
    def test_nan_never_raises(self):
        quotes = [_q("A", 10), Quote(symbol="B", price=math.nan), _q("C", 5)]
        out = sort_quotes(quotes, SortOrder.PRICE, SortDirection.ASCENDING)
        assert {q.symbol for q in out} == {"A", "B", "C"}

    def test_market_cap_none_sorts_lowest(self):
        quotes = [Quote(symbol="A", market_cap=None), Quote(symbol="B", market_cap=10), Quote(symbol="C", market_cap=5)]
        asc = sort_quotes(quotes, SortOrder.MARKET_CAP, SortDirection.ASCENDING)
        desc = sort_quotes(quotes, SortOrder.MARKET_CAP, SortDirection.DESCENDING)
        assert [q.symbol for q in asc] == ["A", "C", "B"]
        assert [q.symbol for q in desc] == ["B", "C", "A"]

    def test_ties_keep_incoming_order_both_ways(self):
        quotes = [Quote(symbol=s, volume=1) for s in "XYZ"]
        for direction in SortDirection:
            out = sort_quotes(quotes, SortOrder.VOLUME, direction)
            assert [q.symbol for q in out] == ["X", "Y", "Z"]

    def test_symbol_and_name(self):
        quotes = [_q("B", name="alpha"), _q("A", name="beta")]
        assert [q.symbol for q in sort_quotes(quotes, SortOrder.SYMBOL, SortDirection.ASCENDING)] == ["A", "B"]
        assert [q.symbol for q in sort_quotes(quotes, SortOrder.NAME, SortDirection.ASCENDING)] == ["B", "A"]

    def test_set_sort_order_same_column_toggles(self):
        app = _app()
        app.set_sort_order(SortOrder.CHANGE_PERCENT)
        assert app.sort_direction is SortDirection.ASCENDING
        app.set_sort_order(SortOrder.PRICE)
        assert app.sort_order is SortOrder.PRICE
        assert app.sort_direction is SortDirection.DESCENDING

    def test_toggle_direction_resorts(self):
        app = _app(("A", "B"), BatchResult(quotes=[_q("A", 1, 1), _q("B", 2, 1)]))
        app.refresh()
        assert [q.symbol for q in app.quotes] == ["B", "A"]
        app.toggle_sort_direction()
        assert [q.symbol for q in app.quotes] == ["A", "B"]

    def test_next_sort_order(self):
        app = _app(sort_order=SortOrder.MARKET_CAP)
        app.next_sort_order()
        assert app.sort_order is SortOrder.SYMBOL


# ---------------------------------------------------------------------------
# View state: groups, filters, navigation
# ---------------------------------------------------------------------------


def _loaded_app(n: int = 15, **kw) -> AppState:
    symbols = [f"S{i:02d}" for i in range(n)]
    batch = BatchResult(quotes=[_q(s, 100 + i) for i, s in enumerate(symbols)])
    app = _app(symbols, batch, **kw)
    app.refresh()
    return app


class TestGroups:
    def test_cycle(self):
        app = _app(groups={"tech": ["AAPL"], "crypto": ["BTC"]})
        assert app.group_names() == ["all", "tech", "crypto"]
        assert app.next_group() == "tech"
        assert app.active_symbols() == ["AAPL"]
        assert app.next_group() == "crypto"
        assert app.active_symbols() == ["BTC-USD"]
        assert app.next_group() is None
        assert app.active_symbols() == ["AAPL", "MSFT", "TSLA"]

    def test_group_change_forces_refresh(self):
        app = _app(("AAPL",), BatchResult(quotes=[_q("AAPL")]), groups={"g": ["AAPL"]})
        app.refresh()
        assert not app.needs_refresh()
        app.set_group("g")
        assert app.needs_refresh()

    def test_set_group_unknown(self):
        app = _app(groups={"tech": ["AAPL"]})
        with pytest.raises(KeyError):
            app.set_group("nope")
        app.set_group("all")
        assert app.active_group is None

    def test_no_groups_cycle_stays_all(self):
        app = _app()
        assert app.next_group() is None


class TestFilters:
    def test_search_matches_symbol_or_name(self):
        app = _app(
            ("AAPL", "MSFT"),
            BatchResult(quotes=[_q("AAPL", name="Apple Inc."), _q("MSFT", name="Microsoft")]),
        )
        app.refresh()
        app.set_search("micro")
        assert [q.symbol for q in app.display_quotes()] == ["MSFT"]
        app.set_search("aap")
        assert [q.symbol for q in app.display_quotes()] == ["AAPL"]

    def test_type_filter_and_top_n(self):
        app = _app(
            ("AAPL", "BTC-USD", "ETH-USD"),
            BatchResult(quotes=[
                _q("AAPL", 101),
                _q("BTC-USD", 110, quote_type=QuoteType.CRYPTOCURRENCY),
                _q("ETH-USD", 105, quote_type=QuoteType.CRYPTOCURRENCY),
            ]),
            top_n=1,
        )
        app.refresh()
        assert [q.symbol for q in app.display_quotes()] == ["BTC-USD"]
        app.set_type_filter(QuoteType.EQUITY)
        assert [q.symbol for q in app.display_quotes()] == ["AAPL"]


class TestNavigation:
    def test_bounds(self):
        app = _loaded_app(3)
        app.select_up()
        assert app.selected == 0
        app.select_down()
        app.select_down()
        app.select_down()
        assert app.selected == 2
        app.select_top()
        assert app.selected == 0
        app.select_bottom()
        assert app.selected == 2

    def test_paging(self):
        app = _loaded_app(15)
        app.page_down()
        assert app.selected == 10
        app.page_down()
        assert app.selected == 14
        app.page_up()
        assert app.selected == 4
        app.page_up()
        assert app.selected == 0

    def test_selected_quote_follows_display(self):
        app = _loaded_app(5)
        app.select_bottom()
        # descending change% → the lowest price is last
        assert app.selected_quote().symbol == "S00"

    def test_selection_clamped_when_view_shrinks(self):
        app = _loaded_app(5)
        app.select_bottom()
        app.set_search("S04")
        assert app.selected == 0
        assert app.selected_quote().symbol == "S04"

    def test_empty_view(self):
        app = _app()
        app.select_down()
        app.page_down()
        assert app.selected == 0
        assert app.selected_quote() is None


class TestWatchlistEdits:
    def test_add_symbol_expands_and_dedups(self):
        app = _app(("AAPL",))
        assert app.add_symbol(" ETH ") == "ETH-USD"
        assert app.add_symbol("ETH-USD") == "ETH-USD"
        assert app.symbols == ["AAPL", "ETH-USD"]

    def test_add_symbol_rejects_invalid(self):
        app = _app(("AAPL",))
        assert app.add_symbol("bad/sym") is None
        assert app.symbols == ["AAPL"]

    def test_remove_symbol_drops_state(self):
        app = _app(("AAPL", "MSFT"), BatchResult(quotes=[_q("AAPL"), _q("MSFT")]))
        app.refresh()
        assert app.remove_symbol("MSFT") is True
        assert app.symbols == ["AAPL"]
        assert [q.symbol for q in app.quotes] == ["AAPL"]
        assert app.history.prices("MSFT") == []
        assert app.data_age_s("MSFT") is None
        assert app.remove_symbol("MSFT") is False


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------


class TestPortfolio:
    def test_totals(self):
        holdings = [Holding("AAPL", 10, 150.0), Holding("BTC", 0.5, 30000.0)]
        app = _app(
            ("AAPL", "BTC-USD"),
            BatchResult(quotes=[_q("AAPL", 200, 190), _q("BTC-USD", 40000, 39000)]),
            holdings=holdings,
        )
        app.refresh()
        assert app.total_portfolio_value() == pytest.approx(2000 + 20000)
        assert app.total_portfolio_cost() == pytest.approx(1500 + 15000)
        assert app.total_portfolio_pnl() == pytest.approx(5500)
        assert app.today_portfolio_change() == pytest.approx(100 + 500)

    def test_holding_rows_include_unfetched(self):
        app = _app(("AAPL",), BatchResult(quotes=[_q("AAPL")]), holdings=[Holding("AAPL", 1, 1.0), Holding("MSFT", 1, 1.0)])
        app.refresh()
        rows = app.holding_rows()
        assert [(h.symbol, q is not None) for h, q in rows] == [("AAPL", True), ("MSFT", False)]

    def test_empty_portfolio_is_zero(self):
        app = _app()
        assert app.total_portfolio_value() == 0
        assert app.total_portfolio_pnl() == 0


# ---------------------------------------------------------------------------
# Lifecycle / toggles / construction
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_iteration_cap(self):
        app = _app(("AAPL",), BatchResult(quotes=[_q("AAPL")]), max_iterations=1)
        assert not app.should_quit()
        app.refresh()
        assert app.should_quit()

    def test_quit(self):
        app = _app()
        app.quit()
        assert app.should_quit()

    def test_secure_mode_blocks_toggles(self):
        app = _app(secure_mode=True)
        app.toggle_help()
        app.toggle_holdings()
        app.toggle_fundamentals()
        assert not (app.show_help or app.show_holdings or app.show_fundamentals)

    def test_secure_mode_blocks_watchlist_edits(self):
        app = _app(("AAPL", "MSFT"), secure_mode=True)
        assert app.add_symbol("TSLA") is None
        assert app.remove_symbol("AAPL") is False
        assert app.symbols == ["AAPL", "MSFT"]

    def test_toggles(self):
        app = _app()
        app.toggle_help()
        app.toggle_holdings()
        assert app.show_help and app.show_holdings

    def test_time_since_refresh_never(self):
        assert _app().time_since_refresh() == "never"

    def test_indicators_and_sparkline(self):
        app = _loaded_app(2)
        assert app.sparkline("S00") == ""
        snap = app.indicators("S00")
        assert snap.rsi is None and snap.macd is None


class TestFromConfig:
    def test_builds_from_watch_config(self):
        watch = WatchConfig(
            general=GeneralSettings(refresh_interval=7.0),
            symbols=["AAPL", "BTC"],
            holdings=[Holding("NVDA", 1, 100.0)],
            display=DisplaySettings(sort_by="symbol", sort_descending=False, show_holdings=True),
            groups={"tech": ["AAPL"]},
            alerts={"BTC": [{"condition": "above", "price": 1}]},
        )
        fetcher = FakeFetcher()
        app = AppState.from_config(Config(), watch, fetcher=fetcher)
        assert app.fetcher is fetcher
        assert app.symbols == ["AAPL", "BTC-USD", "NVDA"]
        assert app.scheduler.interval_s == 7.0
        assert app.sort_order is SortOrder.SYMBOL
        assert app.sort_direction is SortDirection.ASCENDING
        assert app.show_holdings is True
        assert [a.symbol for a in app.alerts.all_alerts()] == ["BTC-USD"]
        assert app.alerts.notify_enabled is False

    def test_explicit_arguments_win(self):
        watch = WatchConfig(symbols=["AAPL"], display=DisplaySettings(sort_by="bogus"))
        app = AppState.from_config(
            Config(), watch,
            symbols=["MSFT"], fetcher=FakeFetcher(), refresh_interval_s=2.0,
            reverse=True, notifier=lambda hit: None, show_holdings=True,
        )
        assert app.symbols == ["MSFT"]
        assert app.scheduler.interval_s == 2.0
        assert app.sort_order is SortOrder.CHANGE_PERCENT
        assert app.sort_direction is SortDirection.ASCENDING
        assert app.alerts.notify_enabled is True
        assert app.show_holdings is True

    @patch.dict("os.environ", {"QUOTESTACK_SECURE": "1"})
    def test_display_flags_and_secure_mode(self):
        watch = WatchConfig(symbols=["AAPL"], display=DisplaySettings(show_header=False, show_separators=False))
        app = AppState.from_config(Config(), watch, fetcher=FakeFetcher())
        assert app.show_header is False
        assert app.show_separators is False
        assert app.secure_mode is True
