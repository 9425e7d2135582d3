"""Application state controller.

``AppState`` owns everything a refresh cycle touches: the symbol set,
current quotes, price history, alert table, quote cache, scheduler and
the view state (sort, selection, group, filters).  Fetch workers only
ever return a ``BatchResult``; ``apply_batch`` is the single place where
results are merged into shared state, and it must be called from the
thread that owns the ``AppState`` (the CLI loop or the Streamlit script).
"""

from __future__ import annotations

import logging
import time
from functools import cmp_to_key
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from .alerts import AlertEngine, Notifier, TriggeredAlert
from .cache import QuoteCache
from .common_types import (
    BatchResult,
    Holding,
    Quote,
    QuoteType,
    SortDirection,
    SortOrder,
    is_nan,
)
from .config import Config, WatchConfig
from .errors import truncate_message
from .history import IndicatorSnapshot, PriceHistory
from .scheduler import DEFAULT_JITTER_PCT, RefreshScheduler
from .symbols import expand, normalize_symbols, validate

logger = logging.getLogger(__name__)

PAGE_SIZE = 10
ALL_GROUP = "all"

# Quote-type filter names accepted from the CLI / UI.
TYPE_FILTERS: Dict[str, QuoteType] = {
    "stocks": QuoteType.EQUITY,
    "crypto": QuoteType.CRYPTOCURRENCY,
    "etf": QuoteType.ETF,
    "index": QuoteType.INDEX,
}


class QuoteFetcher(Protocol):
    def fetch_quotes(self, symbols: Iterable[str]) -> BatchResult: ...


# ── Sorting ─────────────────────────────────────────────────────

def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def _cmp_float(a: float, b: float) -> int:
    # NaN compares equal to everything so the sort never raises.
    if is_nan(a) or is_nan(b):
        return 0
    return _cmp(a, b)


def _cmp_market_cap(a: Optional[int], b: Optional[int]) -> int:
    # Unknown market cap sorts lowest.
    if a is None or b is None:
        return _cmp(a is not None, b is not None)
    return _cmp(a, b)


_COMPARATORS: Dict[SortOrder, Callable[[Quote, Quote], int]] = {
    SortOrder.SYMBOL: lambda a, b: _cmp(a.symbol, b.symbol),
    SortOrder.NAME: lambda a, b: _cmp(a.name, b.name),
    SortOrder.PRICE: lambda a, b: _cmp_float(a.price, b.price),
    SortOrder.CHANGE: lambda a, b: _cmp_float(a.change, b.change),
    SortOrder.CHANGE_PERCENT: lambda a, b: _cmp_float(a.change_percent, b.change_percent),
    SortOrder.VOLUME: lambda a, b: _cmp(a.volume, b.volume),
    SortOrder.MARKET_CAP: lambda a, b: _cmp_market_cap(a.market_cap, b.market_cap),
}


def sort_quotes(quotes: List[Quote], order: SortOrder, direction: SortDirection) -> List[Quote]:
    """Stable sort by *order*; ties keep their incoming order in both directions."""
    base = _COMPARATORS[order]
    if direction is SortDirection.DESCENDING:
        key = cmp_to_key(lambda a, b: base(b, a))
    else:
        key = cmp_to_key(base)
    return sorted(quotes, key=key)


# ── Controller ──────────────────────────────────────────────────

class AppState:
    """Composes fetcher, history, alerts, cache and scheduler."""

    def __init__(
        self,
        symbols: Iterable[str],
        *,
        fetcher: Optional[QuoteFetcher] = None,
        holdings: Iterable[Holding] = (),
        groups: Optional[Mapping[str, Iterable[str]]] = None,
        alerts: Optional[AlertEngine] = None,
        refresh_interval_s: float = 5.0,
        jitter_pct: float = DEFAULT_JITTER_PCT,
        cache_ttl_s: float = 30.0,
        sort_order: SortOrder = SortOrder.CHANGE_PERCENT,
        sort_direction: SortDirection = SortDirection.DESCENDING,
        max_iterations: int = 0,
        secure_mode: bool = False,
        show_holdings: bool = False,
        show_fundamentals: bool = False,
        show_header: bool = True,
        show_separators: bool = True,
        top_n: Optional[int] = None,
        type_filter: Optional[QuoteType] = None,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Optional[RefreshScheduler] = None,
    ) -> None:
        self._clock = clock
        self.fetcher = fetcher
        self.symbols: List[str] = normalize_symbols(symbols)
        self.holdings: Dict[str, Holding] = {expand(h.symbol.strip()): h for h in holdings}
        self.groups: Dict[str, List[str]] = {
            name: normalize_symbols(members) for name, members in (groups or {}).items()
        }
        self.alerts = alerts if alerts is not None else AlertEngine()
        self.history = PriceHistory()
        self.cache = QuoteCache(cache_ttl_s, clock=clock)
        self.scheduler = scheduler if scheduler is not None else RefreshScheduler(
            refresh_interval_s, jitter_pct=jitter_pct, clock=clock,
        )
        self.fetched_at: Dict[str, float] = {}

        self.quotes: List[Quote] = []
        self.sort_order = sort_order
        self.sort_direction = sort_direction
        self.iteration = 0
        self.max_iterations = max(0, int(max_iterations))
        self.running = True
        self.error: Optional[str] = None
        self.warning: Optional[str] = None

        # ── View state ──
        self.selected = 0
        self.active_group: Optional[str] = None  # None = all symbols
        self.search_query = ""
        self.type_filter = type_filter
        self.top_n = top_n if top_n and top_n > 0 else None
        self.show_help = False
        self.show_holdings = show_holdings
        self.show_fundamentals = show_fundamentals
        self.show_header = show_header
        self.show_separators = show_separators
        self.secure_mode = secure_mode

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        watch: WatchConfig,
        *,
        symbols: Optional[Iterable[str]] = None,
        fetcher: Optional[QuoteFetcher] = None,
        notifier: Optional[Notifier] = None,
        refresh_interval_s: Optional[float] = None,
        timeout_s: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        sort_order: Optional[SortOrder] = None,
        reverse: bool = False,
        **kwargs: Any,
    ) -> "AppState":
        """Build from env config + watchlist file; explicit arguments win.

        ``symbols`` replaces the file's symbol set entirely.  When no
        ``fetcher`` is supplied a ``YahooChartAdapter`` is created, which
        raises ``ClientInitError`` if the HTTP client cannot be built.
        """
        if fetcher is None:
            from .ingest_yahoo import YahooChartAdapter

            fetcher = YahooChartAdapter(
                timeout_s=timeout_s or watch.general.timeout or cfg.timeout_s,
                max_concurrency=max_concurrency or cfg.max_concurrency,
                enrich_market_cap=cfg.enrich_market_cap,
                fmp_api_key=cfg.fmp_api_key,
            )

        if sort_order is None:
            try:
                sort_order = SortOrder.parse(watch.display.sort_by)
            except ValueError:
                logger.warning("Unknown sort_by %r in config; using change_percent", watch.display.sort_by)
                sort_order = SortOrder.CHANGE_PERCENT
        if reverse:
            direction = SortDirection.ASCENDING
        else:
            direction = SortDirection.DESCENDING if watch.display.sort_descending else SortDirection.ASCENDING

        engine = AlertEngine(notifier=notifier, notify_enabled=notifier is not None)
        engine.load({expand(sym.strip()): rows for sym, rows in watch.alerts.items()})

        kwargs.setdefault("show_holdings", watch.display.show_holdings)
        kwargs.setdefault("show_fundamentals", watch.display.show_fundamentals)
        kwargs.setdefault("show_header", watch.display.show_header)
        kwargs.setdefault("show_separators", watch.display.show_separators)
        kwargs.setdefault("secure_mode", cfg.secure_mode)
        return cls(
            list(symbols) if symbols is not None else watch.all_symbols(),
            fetcher=fetcher,
            holdings=watch.holdings,
            groups=watch.groups,
            alerts=engine,
            refresh_interval_s=refresh_interval_s or watch.general.refresh_interval or cfg.refresh_interval_s,
            jitter_pct=cfg.jitter_pct,
            cache_ttl_s=cfg.cache_ttl_s,
            sort_order=sort_order,
            sort_direction=direction,
            **kwargs,
        )

    # ── Refresh cycle ───────────────────────────────────────────

    def active_symbols(self) -> List[str]:
        if self.active_group is not None:
            return list(self.groups.get(self.active_group, ()))
        return list(self.symbols)

    def needs_refresh(self) -> bool:
        return self.scheduler.needs_refresh()

    def force_refresh(self) -> None:
        self.scheduler.force_refresh()

    def refresh(self) -> List[TriggeredAlert]:
        """Run one synchronous fetch + merge. Returns the triggered alerts."""
        self.scheduler.mark_attempt()
        active = self.active_symbols()
        if not active:
            return []
        if self.fetcher is None:
            raise RuntimeError("AppState has no fetcher configured")
        return self.apply_batch(self.fetcher.fetch_quotes(active))

    def apply_batch(self, batch: BatchResult) -> List[TriggeredAlert]:
        """Merge one fetch cycle into state.

        Total failure keeps the previous quotes and sets ``error``.  On a
        partial failure the failed symbols keep their last-known-good
        quote while it is still fresh in the cache, and ``warning`` lists
        the failures.
        """
        if batch.all_failed:
            self.error = truncate_message("API Error: " + _describe_failures(batch.failures))
            self.warning = None
            logger.warning("Refresh failed for all %d symbols", len(batch.failures))
            return []

        now = self._clock()
        merged: List[Quote] = list(batch.quotes)
        fresh = {q.symbol for q in batch.quotes}
        for sym in batch.failed_symbols:
            cached = self.cache.get(sym)
            if cached is not None and sym not in fresh:
                merged.append(cached)

        for q in batch.quotes:
            self.history.record(q.symbol, q.price)
            self.cache.put(q)
            self.fetched_at[q.symbol] = now

        self.quotes = sort_quotes(merged, self.sort_order, self.sort_direction)
        self.iteration += 1
        self.scheduler.mark_success()
        triggered = self.alerts.evaluate(batch.quotes)

        self.error = None
        if batch.failures:
            self.warning = truncate_message(
                f"{len(batch.failures)} symbol(s) failed: " + _describe_failures(batch.failures)
            )
        else:
            self.warning = None
        self.cache.purge_expired()
        self._clamp_selection()
        logger.debug(
            "Merged batch #%d: %d fresh, %d carried over, %d alerts",
            self.iteration, len(batch.quotes), len(merged) - len(batch.quotes), len(triggered),
        )
        return triggered

    def is_current_batch(self, batch: BatchResult) -> bool:
        """False when *batch* asked for symbols outside the active set.

        A batch fetched before a group switch or a symbol removal lands
        after the view changed; merging it would show the wrong rows.
        """
        active = set(self.active_symbols())
        requested = {q.symbol for q in batch.quotes} | set(batch.failed_symbols)
        return requested <= active

    def acknowledge(self) -> None:
        self.error = None
        self.warning = None

    @property
    def triggered_alerts(self) -> List[TriggeredAlert]:
        return list(self.alerts.triggered)

    # ── Sorting ─────────────────────────────────────────────────

    def sort_quotes(self) -> None:
        self.quotes = sort_quotes(self.quotes, self.sort_order, self.sort_direction)

    def toggle_sort_direction(self) -> None:
        self.sort_direction = self.sort_direction.toggle()
        self.sort_quotes()

    def next_sort_order(self) -> None:
        self.sort_order = self.sort_order.next()
        self.sort_quotes()

    def set_sort_order(self, order: SortOrder) -> None:
        """Same column toggles direction; a new column starts descending."""
        if order is self.sort_order:
            self.sort_direction = self.sort_direction.toggle()
        else:
            self.sort_order = order
            self.sort_direction = SortDirection.DESCENDING
        self.sort_quotes()

    # ── View ────────────────────────────────────────────────────

    def display_quotes(self) -> List[Quote]:
        rows = self.quotes
        if self.active_group is not None:
            members = set(self.groups.get(self.active_group, ()))
            rows = [q for q in rows if q.symbol in members]
        query = self.search_query.strip().lower()
        if query:
            rows = [q for q in rows if query in q.symbol.lower() or query in q.name.lower()]
        if self.type_filter is not None:
            rows = [q for q in rows if q.quote_type is self.type_filter]
        if self.top_n is not None:
            rows = rows[: self.top_n]
        return list(rows)

    def set_search(self, query: str) -> None:
        self.search_query = query
        self._clamp_selection()

    def set_type_filter(self, quote_type: Optional[QuoteType]) -> None:
        self.type_filter = quote_type
        self._clamp_selection()

    def group_names(self) -> List[str]:
        return [ALL_GROUP, *self.groups]

    def next_group(self) -> Optional[str]:
        """Cycle all → each group (file order) → all. Returns the new group."""
        if not self.groups:
            self.active_group = None
            return None
        names = list(self.groups)
        if self.active_group is None:
            self.active_group = names[0]
        else:
            idx = names.index(self.active_group) if self.active_group in names else -1
            self.active_group = names[idx + 1] if idx + 1 < len(names) else None
        self.selected = 0
        self.scheduler.force_refresh()
        return self.active_group

    def set_group(self, name: Optional[str]) -> None:
        if name in (None, ALL_GROUP):
            self.active_group = None
        elif name in self.groups:
            self.active_group = name
        else:
            raise KeyError(f"Unknown group: {name}")
        self.selected = 0
        self.scheduler.force_refresh()

    # ── Navigation ──────────────────────────────────────────────

    def _clamp_selection(self) -> None:
        n = len(self.display_quotes())
        self.selected = min(max(self.selected, 0), max(n - 1, 0))

    def select_up(self) -> None:
        if self.selected > 0:
            self.selected -= 1

    def select_down(self) -> None:
        if self.selected + 1 < len(self.display_quotes()):
            self.selected += 1

    def select_top(self) -> None:
        self.selected = 0

    def select_bottom(self) -> None:
        self.selected = max(len(self.display_quotes()) - 1, 0)

    def page_up(self, n: int = PAGE_SIZE) -> None:
        self.selected = max(self.selected - n, 0)

    def page_down(self, n: int = PAGE_SIZE) -> None:
        self.selected = min(self.selected + n, max(len(self.display_quotes()) - 1, 0))

    def selected_quote(self) -> Optional[Quote]:
        rows = self.display_quotes()
        if 0 <= self.selected < len(rows):
            return rows[self.selected]
        return None

    # ── Watchlist edits ─────────────────────────────────────────

    def add_symbol(self, symbol: str) -> Optional[str]:
        """Add *symbol* (expanded). Returns the stored form, or None if rejected."""
        if self.secure_mode:
            return None
        sym = expand(symbol.strip())
        if not validate(sym):
            logger.warning("Rejected symbol %r", symbol)
            return None
        if sym not in self.symbols:
            self.symbols.append(sym)
            self.scheduler.force_refresh()
        return sym

    def remove_symbol(self, symbol: str) -> bool:
        if self.secure_mode:
            return False
        sym = expand(symbol.strip())
        if sym not in self.symbols:
            return False
        self.symbols.remove(sym)
        self.quotes = [q for q in self.quotes if q.symbol != sym]
        self.history.forget(sym)
        self.fetched_at.pop(sym, None)
        self._clamp_selection()
        return True

    # ── Portfolio ───────────────────────────────────────────────

    def total_portfolio_value(self) -> float:
        return sum(
            self.holdings[q.symbol].current_value(q.price)
            for q in self.quotes if q.symbol in self.holdings
        )

    def total_portfolio_cost(self) -> float:
        return sum(h.total_cost for h in self.holdings.values())

    def total_portfolio_pnl(self) -> float:
        return self.total_portfolio_value() - self.total_portfolio_cost()

    def today_portfolio_change(self) -> float:
        return sum(
            self.holdings[q.symbol].quantity * q.change
            for q in self.quotes if q.symbol in self.holdings
        )

    def holding_rows(self) -> List[Tuple[Holding, Optional[Quote]]]:
        """Each holding paired with its current quote (None if not fetched)."""
        by_symbol = {q.symbol: q for q in self.quotes}
        return [(h, by_symbol.get(sym)) for sym, h in self.holdings.items()]

    # ── Derived per-symbol data ─────────────────────────────────

    def data_age_s(self, symbol: str) -> Optional[float]:
        ts = self.fetched_at.get(symbol)
        return None if ts is None else max(0.0, self._clock() - ts)

    def sparkline(self, symbol: str) -> str:
        return self.history.sparkline(symbol)

    def indicators(self, symbol: str, sma_period: int = 20) -> IndicatorSnapshot:
        return self.history.snapshot(symbol, sma_period=sma_period)

    def time_since_refresh(self) -> str:
        elapsed = self.scheduler.seconds_since_refresh()
        if elapsed is None:
            return "never"
        secs = int(elapsed)
        if secs < 60:
            return f"{secs}s ago"
        return f"{secs // 60}m ago"

    # ── Lifecycle & toggles ─────────────────────────────────────

    def quit(self) -> None:
        self.running = False

    def should_quit(self) -> bool:
        return not self.running or (self.max_iterations > 0 and self.iteration >= self.max_iterations)

    def toggle_help(self) -> None:
        if not self.secure_mode:
            self.show_help = not self.show_help

    def toggle_holdings(self) -> None:
        if not self.secure_mode:
            self.show_holdings = not self.show_holdings

    def toggle_fundamentals(self) -> None:
        if not self.secure_mode:
            self.show_fundamentals = not self.show_fundamentals


def _describe_failures(failures: List[Tuple[str, str]]) -> str:
    return "; ".join(f"{sym}: {reason}" for sym, reason in failures)
