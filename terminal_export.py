"""Export utilities for the quote terminal.

- **Text**: screen-reader friendly, one labelled block per quote.
- **CSV**: built through a pandas ``DataFrame`` for proper quoting.
- **JSON**: list of camelCase objects; unknown market cap is ``null``.

``write_export`` uses the tempfile + ``os.replace`` pattern so a reader
tailing the file never sees a half-written export.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any, Iterable

import pandas as pd

from quotestack.common_types import Quote
from terminal_ui_helpers import format_market_cap, format_volume

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("text", "csv", "json")

CSV_COLUMNS = ["Symbol", "Name", "Price", "Change", "Change%", "Volume", "MarketCap"]


def export_text(quotes: Iterable[Quote]) -> str:
    lines = ["QUOTESTACK DATA EXPORT", "======================", ""]
    for q in quotes:
        lines.extend([
            f"Symbol: {q.symbol}",
            f"Name: {q.name}",
            f"Price: ${q.price:.2f}",
            f"Change: {q.change:+.2f}",
            f"Change %: {q.change_percent:+.2f}%",
            f"Volume: {format_volume(q.volume)}",
            f"Market Cap: {format_market_cap(q.market_cap)}",
            "",
        ])
    return "\n".join(lines) + "\n"


def export_csv(quotes: Iterable[Quote]) -> str:
    rows = [
        {
            "Symbol": q.symbol,
            "Name": q.name,
            "Price": round(q.price, 2),
            "Change": round(q.change, 2),
            "Change%": round(q.change_percent, 2),
            "Volume": q.volume,
            "MarketCap": q.market_cap if q.market_cap is not None else "N/A",
        }
        for q in quotes
    ]
    df = pd.DataFrame(rows, columns=CSV_COLUMNS)
    return df.to_csv(index=False, float_format="%.2f", lineterminator="\n")


def _json_row(q: Quote) -> dict[str, Any]:
    return {
        "symbol": q.symbol,
        "name": q.name,
        "price": round(q.price, 2),
        "change": round(q.change, 2),
        "changePercent": round(q.change_percent, 2),
        "volume": q.volume,
        "marketCap": q.market_cap,
    }


def export_json(quotes: Iterable[Quote]) -> str:
    return json.dumps([_json_row(q) for q in quotes], indent=2, ensure_ascii=False) + "\n"


def export_quotes(quotes: Iterable[Quote], fmt: str) -> str:
    """Serialise *quotes* as ``text``, ``csv`` or ``json``."""
    fmt = fmt.lower()
    if fmt == "text":
        return export_text(quotes)
    if fmt == "csv":
        return export_csv(quotes)
    if fmt == "json":
        return export_json(quotes)
    raise ValueError(f"Unknown export format: {fmt!r} (expected one of {', '.join(EXPORT_FORMATS)})")


def write_export(path: str, text: str) -> None:
    """Atomically write *text* to *path* (parent dirs created)."""
    dest = os.path.abspath(path)
    dest_dir = os.path.dirname(dest)
    os.makedirs(dest_dir, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=dest_dir, suffix=".tmp", prefix="export_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_path, dest)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.info("Export written to %s (%d bytes)", dest, len(text))
