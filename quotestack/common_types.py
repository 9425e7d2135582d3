"""Canonical types shared by every quotestack module."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Tuple


class QuoteType(enum.Enum):
    """Instrument category as reported by the provider."""

    EQUITY = "EQUITY"
    CRYPTOCURRENCY = "CRYPTOCURRENCY"
    ETF = "ETF"
    MUTUALFUND = "MUTUALFUND"
    INDEX = "INDEX"
    CURRENCY = "CURRENCY"
    FUTURE = "FUTURE"
    OPTION = "OPTION"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "QuoteType":
        try:
            return cls((raw or "").strip().upper())
        except ValueError:
            return cls.EQUITY

    @property
    def label(self) -> str:
        return _QUOTE_TYPE_LABELS[self]


_QUOTE_TYPE_LABELS: Dict[QuoteType, str] = {
    QuoteType.EQUITY: "Stock",
    QuoteType.CRYPTOCURRENCY: "Crypto",
    QuoteType.ETF: "ETF",
    QuoteType.MUTUALFUND: "Fund",
    QuoteType.INDEX: "Index",
    QuoteType.CURRENCY: "Forex",
    QuoteType.FUTURE: "Future",
    QuoteType.OPTION: "Option",
}


class MarketState(enum.Enum):
    """Trading session state."""

    PRE = "PRE"
    REGULAR = "REGULAR"
    POST = "POST"
    CLOSED = "CLOSED"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "MarketState":
        try:
            return cls((raw or "").strip().upper())
        except ValueError:
            return cls.CLOSED

    @property
    def label(self) -> str:
        return {"PRE": "Pre", "REGULAR": "Open", "POST": "Post", "CLOSED": "Closed"}[self.value]


@dataclass(frozen=True)
class Quote:
    """Snapshot of one instrument at one point in time.

    Immutable.  A fresh instance is built for every successful fetch and
    replaces whatever was held for the symbol before.
    """

    symbol: str
    name: str = ""
    price: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    previous_close: float = 0.0
    open: float = 0.0
    day_high: float = 0.0
    day_low: float = 0.0
    year_high: float = 0.0
    year_low: float = 0.0
    volume: int = 0
    avg_volume: int = 0
    market_cap: Optional[int] = None  # None = unknown
    currency: str = "USD"
    exchange: str = ""
    quote_type: QuoteType = QuoteType.EQUITY
    market_state: MarketState = MarketState.CLOSED
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_prices(cls, symbol: str, price: float, previous_close: float, **kwargs: Any) -> "Quote":
        """Build a Quote, deriving change / change_percent from the prices.

        Both are 0 when *previous_close* is not positive.
        """
        change, change_percent = derive_change(price, previous_close)
        return cls(
            symbol=symbol,
            price=price,
            previous_close=previous_close,
            change=change,
            change_percent=change_percent,
            **kwargs,
        )

    def with_market_cap(self, market_cap: Optional[int]) -> "Quote":
        return replace(self, market_cap=market_cap)


def derive_change(price: float, previous_close: float) -> Tuple[float, float]:
    """Return ``(change, change_percent)`` versus the previous close."""
    if previous_close > 0:
        change = price - previous_close
        return change, change / previous_close * 100.0
    return 0.0, 0.0


@dataclass(frozen=True)
class Holding:
    """A portfolio position. Read-only during a session."""

    symbol: str
    quantity: float
    cost_basis: float

    @property
    def total_cost(self) -> float:
        return self.quantity * self.cost_basis

    def current_value(self, price: float) -> float:
        return self.quantity * price

    def profit_loss(self, price: float) -> float:
        return self.current_value(price) - self.total_cost

    def profit_loss_percent(self, price: float) -> float:
        cost = self.total_cost
        if cost == 0:
            return 0.0
        return self.profit_loss(price) / cost * 100.0


@dataclass
class BatchResult:
    """Outcome of one fetch cycle: one entry per requested symbol."""

    quotes: List[Quote] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)  # (symbol, reason)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def all_failed(self) -> bool:
        return not self.quotes and bool(self.failures)

    @property
    def failed_symbols(self) -> List[str]:
        return [sym for sym, _ in self.failures]

    def __len__(self) -> int:
        return len(self.quotes) + len(self.failures)


# ── Sorting ─────────────────────────────────────────────────────

class SortOrder(enum.Enum):
    SYMBOL = "symbol"
    NAME = "name"
    PRICE = "price"
    CHANGE = "change"
    CHANGE_PERCENT = "change_percent"
    VOLUME = "volume"
    MARKET_CAP = "market_cap"

    def next(self) -> "SortOrder":
        members = list(SortOrder)
        return members[(members.index(self) + 1) % len(members)]

    @property
    def header(self) -> str:
        return _SORT_HEADERS[self]

    @classmethod
    def parse(cls, raw: str) -> "SortOrder":
        """Accept ``change_percent``, ``change-percent`` or ``CHANGE_PERCENT``."""
        return cls(raw.strip().lower().replace("-", "_"))


_SORT_HEADERS: Dict[SortOrder, str] = {
    SortOrder.SYMBOL: "SYMBOL",
    SortOrder.NAME: "NAME",
    SortOrder.PRICE: "PRICE",
    SortOrder.CHANGE: "CHANGE",
    SortOrder.CHANGE_PERCENT: "CHG%",
    SortOrder.VOLUME: "VOLUME",
    SortOrder.MARKET_CAP: "MKT CAP",
}


class SortDirection(enum.Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"

    def toggle(self) -> "SortDirection":
        if self is SortDirection.ASCENDING:
            return SortDirection.DESCENDING
        return SortDirection.ASCENDING


def is_nan(value: float) -> bool:
    return isinstance(value, float) and math.isnan(value)
