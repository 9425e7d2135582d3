"""Quote Terminal — live stock & crypto dashboard.

Features:
- Parallel quote refresh (Yahoo chart endpoint) on a background thread
- Sortable, filterable quote table with sparklines and data freshness
- Portfolio view with P/L from the config file's holdings
- Price alerts (above / below / equal) with bell + webhook notification
- RSI / SMA / MACD for the selected symbol
- Export of the current view as text, CSV or JSON

Run with::

    streamlit run streamlit_terminal.py

Symbols, holdings, groups and alerts come from ``~/.config/quotestack/config.toml``
(or ``QUOTESTACK_CONFIG``).  Optional: ``FMP_API_KEY`` for market caps.
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import Any

import pandas as pd
import streamlit as st

# ── Path setup ──────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quotestack.alerts import CONDITION_CHOICES, AlertSetupFlow
from quotestack.app_state import TYPE_FILTERS, AppState
from quotestack.common_types import SortDirection, SortOrder
from quotestack.config import Config, load_watch_config_or_default
from quotestack.errors import ClientInitError
from quotestack.ingest_yahoo import YahooChartAdapter
from terminal_background_poller import BackgroundPoller
from terminal_export import export_quotes
from terminal_notifications import AlertNotifier, NotifyConfig, reset_throttle
from terminal_ui_helpers import (
    build_holding_rows,
    build_quote_rows,
    change_color,
    enrich_freshness,
    format_market_cap,
    format_price,
    interval_slider_range,
    market_state_summary,
)

logger = logging.getLogger(__name__)

# ── Page config ─────────────────────────────────────────────────

st.set_page_config(
    page_title="Quote Terminal",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded",
)

# ── Persistent state (survives reruns) ──────────────────────────


def _init_app() -> AppState | None:
    """Build the AppState + background poller once per session."""
    cfg = Config()
    watch = load_watch_config_or_default(cfg.config_path or None)
    notifier = AlertNotifier(NotifyConfig())
    try:
        adapter = YahooChartAdapter(
            timeout_s=watch.general.timeout or cfg.timeout_s,
            max_concurrency=cfg.max_concurrency,
            enrich_market_cap=cfg.enrich_market_cap,
            fmp_api_key=cfg.fmp_api_key,
        )
    except ClientInitError as exc:
        st.session_state.init_error = str(exc)
        return None
    app = AppState.from_config(
        cfg,
        watch,
        fetcher=adapter,
        notifier=notifier if notifier.enabled else None,
    )
    st.session_state.colors = watch.colors
    st.session_state.poller = BackgroundPoller(
        adapter,
        app.active_symbols,
        interval_s=app.scheduler.interval_s,
        jitter_pct=cfg.jitter_pct,
    )
    st.session_state.poller.start()
    return app


def _reset_session() -> None:
    """Stop the poller, close the HTTP client and start from a clean session."""
    poller = st.session_state.get("poller")
    if poller is not None:
        poller.stop()
    app = st.session_state.get("app")
    close = getattr(getattr(app, "fetcher", None), "close", None)
    if callable(close):
        close()
    reset_throttle()
    st.session_state.clear()
    logger.info("Dashboard session reset")


def _on_interval_change() -> None:
    secs = float(st.session_state.refresh_interval)
    st.session_state.app.scheduler.set_interval(secs)
    st.session_state.poller.update_interval(secs)


if "app" not in st.session_state:
    st.session_state.init_error = ""
    st.session_state.app = _init_app()
if "auto_refresh" not in st.session_state:
    st.session_state.auto_refresh = True
if "alert_log" not in st.session_state:
    st.session_state.alert_log = []
if "alert_flow" not in st.session_state:
    st.session_state.alert_flow = AlertSetupFlow()

app: AppState | None = st.session_state.app

if app is None:
    st.error(f"Cannot start: {st.session_state.init_error}")
    st.stop()

poller: BackgroundPoller = st.session_state.poller

# ── Merge batches produced by the background thread ─────────────

for _batch in poller.drain():
    if not app.is_current_batch(_batch):
        # fetched before a group switch / symbol removal
        logger.debug("Dropping batch of %d for an inactive symbol set", len(_batch))
        continue
    for _hit in app.apply_batch(_batch):
        st.session_state.alert_log.insert(0, {"time": time.strftime("%H:%M:%S"), "alert": _hit.message()})
st.session_state.alert_log = st.session_state.alert_log[:200]

# ── Sidebar ─────────────────────────────────────────────────────

with st.sidebar:
    st.title("📈 Quote Terminal")

    _lo, _hi, _val = interval_slider_range(app.scheduler.interval_s)
    st.slider(
        "Refresh interval (seconds)",
        min_value=_lo,
        max_value=_hi,
        value=_val,
        step=0.5,
        key="refresh_interval",
        on_change=_on_interval_change,
    )

    st.session_state.auto_refresh = st.toggle("Auto-refresh", value=st.session_state.auto_refresh)

    if st.button("🔄 Refresh Now", width='stretch'):
        poller.force()

    st.divider()

    # Group / filter / sort
    _groups = app.group_names()
    _current = app.active_group or _groups[0]
    group = st.selectbox("Group", _groups, index=_groups.index(_current))
    if (group if group != _groups[0] else None) != app.active_group:
        app.set_group(group)
        poller.force()

    _filters = ["all", *TYPE_FILTERS]
    _ftype = st.selectbox("Type", _filters, index=0)
    app.set_type_filter(TYPE_FILTERS.get(_ftype))

    app.set_search(st.text_input("Search symbol / name", value=app.search_query))

    _orders = list(SortOrder)
    _order = st.selectbox(
        "Sort by",
        _orders,
        index=_orders.index(app.sort_order),
        format_func=lambda o: o.header,
    )
    _desc = st.toggle("Descending", value=app.sort_direction is SortDirection.DESCENDING)
    _direction = SortDirection.DESCENDING if _desc else SortDirection.ASCENDING
    if _order is not app.sort_order or _direction is not app.sort_direction:
        app.sort_order = _order
        app.sort_direction = _direction
        app.sort_quotes()

    _top = st.number_input("Top N (0 = all)", min_value=0, value=app.top_n or 0, step=1)
    app.top_n = int(_top) or None

    if st.toggle("Holdings view", value=app.show_holdings, disabled=app.secure_mode) != app.show_holdings:
        app.toggle_holdings()
    if st.toggle("Fundamentals", value=app.show_fundamentals, disabled=app.secure_mode) != app.show_fundamentals:
        app.toggle_fundamentals()
    if app.secure_mode:
        st.caption("🔒 Secure mode: editing disabled")

    st.divider()

    # Watchlist edits
    if not app.secure_mode:
        with st.expander("✏️ Watchlist"):
            _new = st.text_input("Add symbol", key="add_sym")
            if st.button("Add", key="add_btn") and _new:
                if app.add_symbol(_new) is None:
                    st.warning(f"Invalid symbol: {_new}")
                else:
                    poller.force()
                    st.rerun()
            _rm = st.selectbox("Remove symbol", ["", *app.symbols], key="rm_sym")
            if st.button("Remove", key="rm_btn") and _rm:
                app.remove_symbol(_rm)
                st.rerun()

    # Alert builder
    st.subheader("🔔 Alerts")
    if not app.secure_mode:
        with st.expander("➕ New Alert"):
            _sym_opts = [q.symbol for q in app.quotes] or app.symbols
            alert_sym = st.selectbox("Symbol", _sym_opts, key="alert_sym")
            alert_cond = st.selectbox(
                "Condition",
                CONDITION_CHOICES,
                format_func=lambda c: c.value,
                key="alert_cond",
            )
            alert_price = st.text_input("Target price", key="alert_px", placeholder="e.g. 187.50")
            if st.button("Add Alert", key="add_alert") and alert_sym:
                _alert = st.session_state.alert_flow.submit(alert_sym, alert_cond, alert_price)
                if _alert is None:
                    st.warning(f"Invalid target price: {alert_price!r}")
                else:
                    app.alerts.add_alert(_alert.symbol, _alert.condition, _alert.target)
                    st.toast(f"Alert added: {_alert.describe()}", icon="🔔")
                    st.rerun()

    for _sym in sorted({a.symbol for a in app.alerts.all_alerts()}):
        for _i, _alert in enumerate(app.alerts.alerts_for(_sym)):
            cols = st.columns([5, 1])
            with cols[0]:
                st.caption(_alert.describe())
            with cols[1]:
                if st.button("✕", key=f"del_alert_{_sym}_{_i}", disabled=app.secure_mode):
                    app.alerts.remove_alert(_sym, _i)
                    st.rerun()

    st.divider()

    st.button("♻️ Reset session", width='stretch', on_click=_reset_session)

    st.metric("Refreshes", app.iteration)
    st.caption(f"Last refresh: {app.time_since_refresh()}")
    if poller.last_poll_error:
        st.error(f"Last poll: {poller.last_poll_error}")
    else:
        st.caption(f"Last poll: {poller.last_poll_status}")

# ── Header ──────────────────────────────────────────────────────

st.title("Quote Terminal")

if app.error:
    st.error(app.error)
if app.warning:
    st.warning(app.warning)
if app.error or app.warning:
    if st.button("Dismiss"):
        app.acknowledge()
        st.rerun()

quotes = app.display_quotes()
colors: Any = st.session_state.get("colors")

if app.show_header:
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Symbols", len(quotes))
    c2.metric("Market", market_state_summary(quotes) if quotes else "—")
    if app.holdings:
        c3.metric(
            "Portfolio",
            format_price(app.total_portfolio_value()),
            f"{app.today_portfolio_change():+.2f} today",
        )
        c4.metric("Total P/L", f"{app.total_portfolio_pnl():+,.2f}")

# ── Main table ──────────────────────────────────────────────────

if app.show_holdings:
    rows = build_holding_rows(app.holding_rows())
    if rows:
        st.dataframe(pd.DataFrame(rows), width='stretch', hide_index=True)
    else:
        st.info("No holdings with quotes yet.")
elif quotes:
    rows = build_quote_rows(quotes)
    for row, q in zip(rows, quotes):
        row["TREND"] = app.sparkline(q.symbol)
        row["AGE"] = enrich_freshness(app.data_age_s(q.symbol))
        if app.show_fundamentals:
            row["DAY LOW"] = format_price(q.day_low)
            row["DAY HIGH"] = format_price(q.day_high)
            row["52W LOW"] = format_price(q.year_low)
            row["52W HIGH"] = format_price(q.year_high)
            row["TYPE"] = q.quote_type.label
    df = pd.DataFrame(rows)
    _chg = [q.change for q in quotes]

    def _color_change(col: "pd.Series") -> list[str]:
        if col.name not in ("CHANGE", "CHG%"):
            return [""] * len(col)
        return [f"color: {change_color(v, colors)}" for v in _chg]

    st.dataframe(
        df.style.apply(_color_change, axis=0),
        width='stretch',
        height=min(700, 40 + 35 * len(df)),
        hide_index=True,
    )
else:
    st.info("Waiting for the first refresh…")

# ── Detail / indicators ─────────────────────────────────────────

if quotes:
    _syms = [q.symbol for q in quotes]
    detail_sym = st.selectbox("Details", _syms, index=min(app.selected, len(_syms) - 1))
    app.selected = _syms.index(detail_sym)
    q = app.selected_quote()
    if q is not None:
        snap = app.indicators(q.symbol)
        d1, d2, d3, d4 = st.columns(4)
        d1.metric(q.symbol, format_price(q.price), f"{q.change_percent:+.2f}%")
        d2.metric("RSI(14)", f"{snap.rsi:.1f}" if snap.rsi is not None else "n/a")
        d3.metric(f"SMA({snap.sma_period})", format_price(snap.sma) if snap.sma is not None else "n/a")
        if snap.macd is not None:
            d4.metric("MACD", f"{snap.macd.macd_line:+.3f}", f"hist {snap.macd.histogram:+.3f}")
        else:
            d4.metric("MACD", "n/a")
        st.caption(
            f"{q.name} · {q.exchange or '?'} · {q.currency} · {q.market_state.label} · "
            f"Mkt cap {format_market_cap(q.market_cap)} · "
            f"{len(app.history.prices(q.symbol))} points of history"
        )
        _series = app.history.prices(q.symbol)
        if len(_series) >= 2:
            st.line_chart(pd.DataFrame({"price": _series}))

# ── Triggered alerts ────────────────────────────────────────────

if app.triggered_alerts:
    st.subheader("🔔 Triggered")
    for hit in app.triggered_alerts:
        st.warning(hit.message())

if st.session_state.alert_log:
    with st.expander(f"Alert log ({len(st.session_state.alert_log)})"):
        st.dataframe(pd.DataFrame(st.session_state.alert_log), width='stretch', hide_index=True)

# ── Export ──────────────────────────────────────────────────────

with st.expander("⬇️ Export"):
    fmt = st.radio("Format", ["text", "csv", "json"], horizontal=True)
    payload = export_quotes(quotes, fmt)
    st.download_button(
        "Download",
        data=payload,
        file_name=f"quotes.{'txt' if fmt == 'text' else fmt}",
        mime={"text": "text/plain", "csv": "text/csv", "json": "application/json"}[fmt],
    )

# ── Auto-refresh trigger ───────────────────────────────────────

if st.session_state.auto_refresh:
    # Sleep briefly (not the full refresh interval) to keep the UI responsive.
    # The background poller already gates the actual fetch on its scheduler.
    time.sleep(1)
    st.rerun()
