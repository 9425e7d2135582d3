"""Synchronous Yahoo chart-quote adapter with bounded parallel fetch.

The v8 chart endpoint only answers one symbol per request, so a batch is
fanned out over a thread pool.  Every request passes an ``AdmissionGate``
first, which caps the number of outbound connections regardless of how
many symbols are watched.

Per-symbol problems (bad syntax, timeouts, HTTP errors, error payloads,
malformed JSON) never fail the batch: each one becomes a
``(symbol, reason)`` entry in ``BatchResult.failures``.

Optional market-cap enrichment (FMP company profile) runs as a
continuation inside the same task as the primary fetch, so it finishes
(or times out) before the batch is returned without holding up sibling
symbols.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import quote as _urlquote

import httpx

from ._http import (
    _sanitize_exc,
    build_client,
    describe_transport_error,
    log_enrichment_miss,
    safe_json,
)
from .common_types import BatchResult, MarketState, Quote, QuoteType
from .errors import QuoteFetchError, QuoteParseError, QuoteStackError
from .symbols import validate

logger = logging.getLogger(__name__)

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart"
FMP_PROFILE_URL = "https://financialmodelingprep.com/api/v3/profile"

DEFAULT_MAX_CONCURRENCY = 12
DEFAULT_TIMEOUT_S = 10.0
ENRICH_TIMEOUT_S = 5.0

INVALID_SYMBOL_REASON = "Invalid symbol format"


# ── Admission gate ──────────────────────────────────────────────

class AdmissionGate:
    """Counting gate: at most *permits* holders at once.

    Used as a context manager around each outbound request.  Tracks the
    current and peak number of holders for observability/tests.
    """

    def __init__(self, permits: int) -> None:
        self.permits = max(1, int(permits))
        self._sem = threading.BoundedSemaphore(self.permits)
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    def __enter__(self) -> "AdmissionGate":
        self._sem.acquire()
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        with self._lock:
            self.in_flight -= 1
        self._sem.release()


# ── Payload parsing ─────────────────────────────────────────────

def _opt_float(meta: dict[str, Any], key: str, symbol: str) -> Optional[float]:
    val = meta.get(key)
    if val is None:
        return None
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise QuoteParseError(f"Malformed field {key!r} for {symbol}: {val!r}", symbol=symbol)
    return float(val)


def _opt_int(meta: dict[str, Any], key: str, symbol: str) -> int:
    val = _opt_float(meta, key, symbol)
    return int(val) if val is not None else 0


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(raw, tz=UTC)
        except (OverflowError, OSError, ValueError):
            pass
    return datetime.now(UTC)


def parse_chart_payload(symbol: str, data: Any) -> Quote:
    """Turn a v8 chart response into a ``Quote`` keyed by *symbol*.

    Raises ``QuoteFetchError`` for provider-reported errors / empty results
    and ``QuoteParseError`` for structurally malformed payloads.
    """
    chart = data.get("chart") if isinstance(data, dict) else None
    if not isinstance(chart, dict):
        raise QuoteParseError(f"Failed to parse response for {symbol}: missing 'chart'", symbol=symbol)

    error = chart.get("error")
    if error:
        desc = error.get("description") if isinstance(error, dict) else str(error)
        raise QuoteFetchError(f"Yahoo Finance error for {symbol}: {desc or 'unknown error'}", symbol=symbol)

    results = chart.get("result")
    if not results:
        raise QuoteFetchError(
            f"No data returned for {symbol}. Server may not be responding or symbol may be invalid.",
            symbol=symbol,
        )
    first = results[0] if isinstance(results, list) else None
    meta = first.get("meta") if isinstance(first, dict) else None
    if not isinstance(meta, dict):
        raise QuoteParseError(f"Failed to parse response for {symbol}: missing 'meta'", symbol=symbol)

    prev_close = _opt_float(meta, "chartPreviousClose", symbol)
    if prev_close is None:
        prev_close = _opt_float(meta, "previousClose", symbol)
    price = _opt_float(meta, "regularMarketPrice", symbol) or 0.0

    def _f(key: str) -> float:
        return _opt_float(meta, key, symbol) or 0.0

    return Quote.from_prices(
        symbol,
        price,
        prev_close or 0.0,
        name=str(meta.get("shortName") or meta.get("longName") or "Unknown"),
        open=0.0,  # not in chart meta
        day_high=_f("regularMarketDayHigh"),
        day_low=_f("regularMarketDayLow"),
        year_high=_f("fiftyTwoWeekHigh"),
        year_low=_f("fiftyTwoWeekLow"),
        volume=_opt_int(meta, "regularMarketVolume", symbol),
        avg_volume=0,  # not in chart meta
        market_cap=None,
        currency=str(meta.get("currency") or "USD"),
        exchange=str(meta.get("exchangeName") or ""),
        quote_type=QuoteType.parse(meta.get("instrumentType")),
        market_state=MarketState.parse(meta.get("marketState")),
        timestamp=_parse_timestamp(meta.get("regularMarketTime")),
    )


def parse_market_cap(data: Any) -> Optional[int]:
    """Extract a positive market cap from an FMP profile payload."""
    row = data[0] if isinstance(data, list) and data else data
    if not isinstance(row, dict):
        return None
    raw = row.get("mktCap", row.get("marketCap"))
    try:
        cap = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return None
    return cap if cap > 0 else None


# ── Adapter ─────────────────────────────────────────────────────

class YahooChartAdapter:
    """Fetch quotes from the Yahoo v8 chart endpoint.

    Parameters
    ----------
    timeout_s : float
        Per-request timeout for the primary quote call.
    max_concurrency : int
        Maximum simultaneous outbound requests (clamped to >= 1).
    enrich_market_cap : bool
        Try the FMP profile endpoint when a quote has no market cap.
    fmp_api_key : str
        Key for the enrichment endpoint (``demo`` works for a few symbols).
    client : httpx.Client, optional
        Pre-built client (tests inject a mock).  When omitted a client is
        created here and ``ClientInitError`` is raised if that fails.
    """

    def __init__(
        self,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        *,
        enrich_market_cap: bool = True,
        fmp_api_key: str = "demo",
        enrich_timeout_s: float = ENRICH_TIMEOUT_S,
        client: httpx.Client | None = None,
    ) -> None:
        self.timeout_s = float(timeout_s)
        self.max_concurrency = max(1, int(max_concurrency))
        self.enrich_market_cap = enrich_market_cap
        self.fmp_api_key = fmp_api_key
        self.enrich_timeout_s = float(enrich_timeout_s)
        self.client = client if client is not None else build_client(self.timeout_s)
        self.last_gate: AdmissionGate | None = None

    # ── Single symbol ───────────────────────────────────────────

    def fetch_quote(self, symbol: str) -> Quote:
        """GET /v8/finance/chart/<symbol>?interval=1d&range=1d"""
        url = f"{YAHOO_CHART_URL}/{_urlquote(symbol, safe='')}"
        try:
            r = self.client.get(
                url,
                params={"interval": "1d", "range": "1d"},
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise QuoteFetchError(
                f"Failed to fetch quote for {symbol}: {describe_transport_error(exc)}",
                symbol=symbol,
            ) from exc

        if not r.is_success:
            # Yahoo reports unknown symbols as 404 + error payload.
            desc = ""
            try:
                err = (r.json().get("chart") or {}).get("error") or {}
                desc = err.get("description", "") if isinstance(err, dict) else ""
            except (ValueError, AttributeError):
                pass
            raise QuoteFetchError(
                f"Yahoo Finance API returned error for {symbol}: HTTP {r.status_code}"
                + (f" ({desc})" if desc else ""),
                symbol=symbol,
            )

        return parse_chart_payload(symbol, safe_json(r, symbol=symbol))

    def fetch_market_cap(self, symbol: str) -> Optional[int]:
        """Best-effort FMP profile lookup. Never raises."""
        url = f"{FMP_PROFILE_URL}/{_urlquote(symbol, safe='')}"
        try:
            r = self.client.get(
                url,
                params={"apikey": self.fmp_api_key},
                timeout=self.enrich_timeout_s,
            )
            r.raise_for_status()
            return parse_market_cap(r.json())
        except (httpx.HTTPError, ValueError) as exc:
            log_enrichment_miss("FMP profile", exc)
            return None

    def _fetch_one(self, symbol: str, gate: AdmissionGate) -> Tuple[str, Quote | None, str | None]:
        """Primary fetch + chained enrichment for one symbol.

        Returns ``(symbol, quote, error_message)``; exactly one of quote /
        error_message is set.
        """
        with gate:
            try:
                q = self.fetch_quote(symbol)
            except QuoteStackError as exc:
                return symbol, None, str(exc)
            if q.market_cap is None and self.enrich_market_cap:
                cap = self.fetch_market_cap(symbol)
                if cap is not None:
                    q = q.with_market_cap(cap)
            return symbol, q, None

    # ── Batch ───────────────────────────────────────────────────

    def fetch_quotes(self, symbols: Iterable[str]) -> BatchResult:
        """Fetch every symbol; one outcome (quote or failure) per unique symbol."""
        batch = BatchResult()
        unique = list(dict.fromkeys(symbols))
        if not unique:
            return batch

        valid: List[str] = []
        for sym in unique:
            if validate(sym):
                valid.append(sym)
            else:
                batch.failures.append((sym, INVALID_SYMBOL_REASON))
        if not valid:
            return batch

        t0 = time.monotonic()
        gate = AdmissionGate(self.max_concurrency)
        self.last_gate = gate
        workers = max(1, min(self.max_concurrency, len(valid)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quote-fetch") as executor:
            future_map = {executor.submit(self._fetch_one, sym, gate): sym for sym in valid}
            for future in as_completed(future_map):
                symbol = future_map[future]
                try:
                    sym, quote, err = future.result()
                except Exception as exc:  # pragma: no cover - defensive catch
                    batch.failures.append((symbol, _sanitize_exc(exc)))
                    continue
                if quote is not None:
                    batch.quotes.append(quote)
                else:
                    batch.failures.append((sym, err or "Unknown error"))

        logger.info(
            "Quote batch: %d ok / %d failed of %d symbols (concurrency %d, %.2fs)",
            len(batch.quotes), len(batch.failures), len(unique),
            self.max_concurrency, time.monotonic() - t0,
        )
        if batch.failures:
            logger.warning(
                "Quote fetch failures: %s",
                "; ".join(f"{s}: {r}" for s, r in batch.failures[:5]),
            )
        return batch

    # ── Lifecycle ───────────────────────────────────────────────

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "YahooChartAdapter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
