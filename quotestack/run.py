"""Entry point: ``python -m quotestack.run``

Batch mode in the spirit of ``top -b``: refresh on the scheduler's
cadence, print one table (or export) per cycle and stop after ``-n``
iterations.  For the interactive view use
``streamlit run streamlit_terminal.py``.

Exit status is 1 when there is nothing to watch or when start-up fails
(bad config file, HTTP client cannot be built).
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Any, Callable, Optional, Sequence, TextIO

from .app_state import TYPE_FILTERS, AppState
from .common_types import SortOrder
from .config import (
    Config,
    default_config_path,
    load_watch_config,
    load_watch_config_or_default,
    sample_config,
)
from .errors import ClientInitError, ConfigError

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="quotestack",
        description="Top-like quote monitor for stocks and crypto (batch mode).",
    )
    parser.add_argument(
        "-s", "--symbols",
        default=None,
        help="Comma-separated symbols, e.g. AAPL,MSFT,BTC.X (overrides the config file).",
    )
    parser.add_argument(
        "-d", "--delay",
        type=float,
        default=None,
        help="Refresh delay in seconds (minimum 1.0).",
    )
    parser.add_argument(
        "-n", "--iterations",
        type=int,
        default=0,
        help="Number of refresh cycles before exiting (0 = run until interrupted).",
    )
    parser.add_argument("-c", "--config", default=None, help="Path to the TOML config file.")
    parser.add_argument(
        "-o", "--sort",
        choices=[o.value.replace("_", "-") for o in SortOrder],
        default=None,
        help="Initial sort field.",
    )
    parser.add_argument("-r", "--reverse", action="store_true", help="Sort ascending.")
    parser.add_argument("-t", "--top", type=int, default=None, help="Only show the top N rows.")
    parser.add_argument(
        "-f", "--filter",
        choices=sorted(TYPE_FILTERS),
        default=None,
        help="Only show one instrument type.",
    )
    parser.add_argument("-g", "--group", default=None, help="Only fetch and show this symbol group.")
    parser.add_argument("-H", "--holdings", action="store_true", help="Show the portfolio view.")
    parser.add_argument(
        "-S", "--secure",
        action="store_true",
        help="Secure mode: view only, watchlist and alert edits are disabled.",
    )
    parser.add_argument("--no-header", action="store_true", help="Hide the banner line of each cycle.")
    parser.add_argument(
        "--audio-alerts",
        action="store_true",
        help="Ring the terminal bell when an alert triggers.",
    )
    parser.add_argument(
        "--export",
        choices=["text", "csv", "json"],
        default=None,
        help="Print each cycle in an export format instead of the table.",
    )
    parser.add_argument(
        "--output",
        default=None,
        metavar="PATH",
        help="Rewrite PATH atomically each cycle instead of printing (text unless --export is set).",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Per-request timeout in seconds.")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Maximum simultaneous quote requests.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def _parse_symbols(raw: str) -> list[str]:
    return [s.strip() for s in raw.split(",") if s.strip()]


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else os.environ.get("QUOTESTACK_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _build_notifier(audio: bool) -> Any:
    from terminal_notifications import AlertNotifier, NotifyConfig

    ncfg = NotifyConfig(audio_enabled=True) if audio else NotifyConfig()
    return AlertNotifier(ncfg) if ncfg.has_any_channel else None


def run_batch(
    app: AppState,
    *,
    export: Optional[str] = None,
    output: Optional[str] = None,
    out: Optional[TextIO] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Refresh → print loop until ``app.should_quit()``.

    With *output* each cycle replaces the file at that path (in the
    *export* format, plain text when unset) instead of writing to *out*.
    """
    from terminal_export import export_quotes, write_export
    from terminal_ui_helpers import render_batch_table

    out = out if out is not None else sys.stdout

    while not app.should_quit():
        if not app.needs_refresh():
            sleep(app.scheduler.seconds_until_due())
            continue
        app.refresh()
        if output:
            write_export(output, export_quotes(app.display_quotes(), export or "text"))
            continue
        if export:
            out.write(export_quotes(app.display_quotes(), export))
        else:
            out.write(render_batch_table(app))
        out.flush()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    cfg = Config()
    try:
        if args.config:
            watch = load_watch_config(args.config)
        else:
            watch = load_watch_config_or_default(cfg.config_path or None)
    except ConfigError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1

    try:
        app = AppState.from_config(
            cfg,
            watch,
            symbols=_parse_symbols(args.symbols) if args.symbols else None,
            notifier=_build_notifier(args.audio_alerts or cfg.audio_alerts),
            refresh_interval_s=args.delay,
            timeout_s=args.timeout,
            max_concurrency=args.max_concurrency,
            sort_order=SortOrder.parse(args.sort) if args.sort else None,
            reverse=args.reverse,
            max_iterations=args.iterations,
            top_n=args.top,
            type_filter=TYPE_FILTERS[args.filter] if args.filter else None,
            **({"show_holdings": True} if args.holdings else {}),
            **({"show_header": False} if args.no_header else {}),
            **({"secure_mode": True} if args.secure else {}),
        )
    except ClientInitError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        return 1

    if args.group:
        try:
            app.set_group(args.group)
        except KeyError:
            sys.stderr.write(
                f"Error: unknown group {args.group!r} (available: {', '.join(app.groups) or 'none'})\n"
            )
            return 1

    if not app.active_symbols():
        sys.stderr.write(
            "Error: No symbols to watch.\n"
            "Provide symbols via -s or a config file.\n\n"
            "Example: python -m quotestack.run -s AAPL,GOOGL,BTC-USD\n\n"
            f"Or create a config file at {default_config_path()}\n\n"
            "Sample config:\n"
            f"{sample_config()}"
        )
        return 1

    logger.info(
        "Watching %d symbols (interval %.1fs, max %s iterations)",
        len(app.active_symbols()), app.scheduler.interval_s, args.iterations or "∞",
    )
    try:
        run_batch(app, export=args.export, output=args.output)
    except KeyboardInterrupt:
        pass
    finally:
        close = getattr(app.fetcher, "close", None)
        if callable(close):
            close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
