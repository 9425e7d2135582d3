"""Pure helper functions shared by the batch renderer and the dashboard.

Every function here is free of Streamlit / session-state side-effects
and can be tested in regular pytest without launching a Streamlit app.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Iterable, Optional

import pandas as pd

from quotestack.common_types import Holding, MarketState, Quote
from quotestack.errors import truncate_message

# ── Icon / colour maps ──────────────────────────────────────────

FRESHNESS_COLORS: dict[str, str] = {
    "FRESH": "🟢",
    "AGING": "🟡",
    "STALE": "🔴",
    "UNKNOWN": "⚪",
}

MARKET_STATE_ICONS: dict[MarketState, str] = {
    MarketState.PRE: "🌅",
    MarketState.REGULAR: "🟢",
    MarketState.POST: "🌆",
    MarketState.CLOSED: "⚫",
}

# Freshness buckets (seconds since the quote was fetched).
FRESH_MAX_S = 30
AGING_MAX_S = 60

QUOTE_COLUMNS = ["SYMBOL", "NAME", "PRICE", "CHANGE", "CHG%", "VOLUME", "MKT CAP"]
HOLDING_COLUMNS = ["SYMBOL", "NAME", "PRICE", "QTY", "VALUE", "COST", "P/L", "P/L%"]


# ── Number formatting ───────────────────────────────────────────


def format_price(price: float) -> str:
    """``$123.45``; sub-dollar prices keep 6 decimals."""
    if price is None or (isinstance(price, float) and math.isnan(price)):
        return "-"
    if price >= 1.0:
        return f"${price:,.2f}"
    return f"${price:.6f}"


def format_volume(volume: int) -> str:
    """Compact volume: ``1.2K``, ``3.4M``, ``5.6B``."""
    if volume >= 1_000_000_000:
        return f"{volume / 1_000_000_000:.1f}B"
    if volume >= 1_000_000:
        return f"{volume / 1_000_000:.1f}M"
    if volume >= 1_000:
        return f"{volume / 1_000:.1f}K"
    return str(volume)


def format_market_cap(market_cap: Optional[float]) -> str:
    """``$2.85T`` / ``$410.00B`` / ``$12.30M`` / ``$4.50K``; unknown or 0 → ``N/A``."""
    if not market_cap:
        return "N/A"
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if market_cap >= threshold:
            return f"${market_cap / threshold:.2f}{suffix}"
    return f"${market_cap:.2f}"


def format_change(value: float, *, pct: bool = False) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "-"
    return f"{value:+.2f}%" if pct else f"{value:+.2f}"


# ── Refresh interval control ────────────────────────────────────

INTERVAL_SLIDER_MIN_S = 1.0
INTERVAL_SLIDER_MAX_S = 60.0


def interval_slider_range(interval_s: float) -> tuple[float, float, float]:
    """``(min, max, value)`` for the refresh slider.

    The configured interval is shown as-is; the range stretches to fit
    values above the usual maximum instead of clamping them.
    """
    value = max(float(interval_s), INTERVAL_SLIDER_MIN_S)
    return INTERVAL_SLIDER_MIN_S, max(INTERVAL_SLIDER_MAX_S, value), value


# ── Freshness ───────────────────────────────────────────────────


def freshness_bucket(age_s: float | None) -> str:
    """``FRESH`` (≤30 s), ``AGING`` (≤60 s), ``STALE`` or ``UNKNOWN``."""
    if age_s is None:
        return "UNKNOWN"
    secs = int(age_s)
    if secs <= FRESH_MAX_S:
        return "FRESH"
    if secs <= AGING_MAX_S:
        return "AGING"
    return "STALE"


def format_age_string(age_s: float | None) -> str:
    """Human-readable data age: ``12s``, ``3m``, ``2h``, or ``?``."""
    if age_s is None or age_s < 0:
        return "?"
    secs = int(age_s)
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        return f"{secs // 60}m"
    return f"{secs // 3600}h"


def enrich_freshness(age_s: float | None) -> str:
    """Prepend the freshness icon to the age: ``🟢 12s``."""
    return f"{FRESHNESS_COLORS[freshness_bucket(age_s)]} {format_age_string(age_s)}"


def market_state_summary(quotes: Iterable[Quote]) -> str:
    """Dominant session state across *quotes* (``Open`` beats ``Pre``/``Post``)."""
    states = {q.market_state for q in quotes}
    for state in (MarketState.REGULAR, MarketState.PRE, MarketState.POST):
        if state in states:
            return f"{MARKET_STATE_ICONS[state]} {state.label}"
    return f"{MARKET_STATE_ICONS[MarketState.CLOSED]} {MarketState.CLOSED.label}"


def change_color(value: float, colors: Any = None) -> str:
    """CSS colour for a signed change, honouring a ``ColorSettings`` if given."""
    gain = getattr(colors, "gain", "#00ff00")
    loss = getattr(colors, "loss", "#ff0000")
    neutral = getattr(colors, "neutral", "#ffffff")
    if value is None or (isinstance(value, float) and math.isnan(value)) or value == 0:
        return neutral
    return gain if value > 0 else loss


# ── Table building ──────────────────────────────────────────────


def build_quote_rows(quotes: Iterable[Quote], *, name_width: int = 20) -> list[dict[str, Any]]:
    """Display rows for the main quote table."""
    return [
        {
            "SYMBOL": q.symbol,
            "NAME": truncate_message(q.name, name_width),
            "PRICE": format_price(q.price),
            "CHANGE": format_change(q.change),
            "CHG%": format_change(q.change_percent, pct=True),
            "VOLUME": format_volume(q.volume),
            "MKT CAP": format_market_cap(q.market_cap),
        }
        for q in quotes
    ]


def build_holding_rows(
    rows: Iterable[tuple[Holding, Optional[Quote]]],
    *,
    name_width: int = 15,
) -> list[dict[str, Any]]:
    """Display rows for the portfolio table; holdings without a quote are skipped."""
    out: list[dict[str, Any]] = []
    for holding, quote in rows:
        if quote is None:
            continue
        out.append({
            "SYMBOL": quote.symbol,
            "NAME": truncate_message(quote.name, name_width),
            "PRICE": f"{quote.price:.2f}",
            "QTY": f"{holding.quantity:.4f}",
            "VALUE": f"{holding.current_value(quote.price):.2f}",
            "COST": f"{holding.total_cost:.2f}",
            "P/L": f"{holding.profit_loss(quote.price):+.2f}",
            "P/L%": f"{holding.profit_loss_percent(quote.price):+.2f}%",
        })
    return out


def render_batch_table(app: Any, *, now: datetime | None = None) -> str:
    """Plain-text snapshot of *app* (an ``AppState``) for batch mode.

    ``app.show_header`` controls the banner line; ``app.show_separators``
    closes each cycle with a rule so consecutive snapshots stay apart.
    """
    lines: list[str] = []
    if app.show_header:
        stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"=== QUOTESTACK {stamp} ===")
    if app.error:
        lines.append(f"! {app.error}")
    if app.warning:
        lines.append(f"~ {app.warning}")

    if app.show_holdings:
        rows = build_holding_rows(app.holding_rows())
        columns = HOLDING_COLUMNS
    else:
        rows = build_quote_rows(app.display_quotes())
        columns = QUOTE_COLUMNS

    if rows:
        df = pd.DataFrame(rows, columns=columns)
        lines.append(df.to_string(index=False))
    else:
        lines.append("(no data)")

    for hit in app.triggered_alerts:
        lines.append(f"ALERT: {hit.message()}")
    if app.show_separators:
        lines.append("-" * max(len(line) for line in "\n".join(lines).splitlines()))
    return "\n".join(lines) + "\n"
