"""Background polling thread for the quote dashboard.

Moves the fetch cycle off the Streamlit rerun loop into a dedicated
``threading.Thread``.  The thread puts each ``BatchResult`` into a
``queue.Queue`` which the Streamlit main loop drains on each rerun and
hands to ``AppState.apply_batch``, so the UI never blocks on network
I/O and shared state is only mutated on the main thread.

Usage in ``streamlit_terminal.py``::

    from terminal_background_poller import BackgroundPoller

    poller = BackgroundPoller(adapter, app.active_symbols, interval_s=5.0)
    poller.start()

    # On each Streamlit rerun:
    for batch in poller.drain():
        app.apply_batch(batch)
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable

from quotestack.common_types import BatchResult
from quotestack.errors import sanitize
from quotestack.scheduler import DEFAULT_JITTER_PCT, RefreshScheduler

logger = logging.getLogger(__name__)

# Upper bound on a single idle wait so interval changes and force()
# are picked up promptly.
_MAX_IDLE_WAIT_S = 0.5


class BackgroundPoller:
    """Runs ``fetcher.fetch_quotes`` in a background thread.

    Thread-safe: batches travel through a ``queue.Queue``; the scheduler
    is only touched under ``_lock``; status attributes are plain
    attribute writes read by the Streamlit thread.

    Parameters
    ----------
    fetcher : object
        Anything with ``fetch_quotes(symbols) -> BatchResult``.
    symbols_fn : callable
        Returns the symbols to fetch for the next cycle.
    interval_s : float
        Refresh interval (jittered and clamped by ``RefreshScheduler``).
    """

    def __init__(
        self,
        fetcher: Any,
        symbols_fn: Callable[[], list[str]],
        *,
        interval_s: float = 5.0,
        jitter_pct: float = DEFAULT_JITTER_PCT,
        scheduler: RefreshScheduler | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._symbols_fn = symbols_fn
        self._scheduler = scheduler if scheduler is not None else RefreshScheduler(
            interval_s, jitter_pct=jitter_pct,
        )

        self._queue: queue.Queue[BatchResult] = queue.Queue(maxsize=100)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        # Observable status (read from Streamlit main thread)
        self.poll_count: int = 0
        self.last_poll_ts: float = 0.0
        self.last_poll_status: str = "—"
        self.last_poll_error: str = ""

    # ── Thread lifecycle ────────────────────────────────────

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background polling thread (idempotent)."""
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="quote-bg-poller",
            daemon=True,
        )
        self._thread.start()
        logger.info("Background poller started (interval=%.1fs)", self._scheduler.interval_s)

    def stop(self) -> None:
        """Signal the thread to stop (non-blocking)."""
        self._stop_event.set()
        logger.info("Background poller stop requested")

    def update_interval(self, interval_s: float) -> None:
        """Update the refresh interval at runtime (thread-safe)."""
        with self._lock:
            self._scheduler.set_interval(interval_s)

    def force(self) -> None:
        """Make the next loop iteration fetch immediately."""
        with self._lock:
            self._scheduler.force_refresh()

    # ── Drain results (called from Streamlit main thread) ───

    def drain(self) -> list[BatchResult]:
        """Drain all pending batches, oldest first (apply in this order)."""
        batches: list[BatchResult] = []
        while True:
            try:
                batches.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batches

    # ── Internal poll loop ──────────────────────────────────

    def _run_loop(self) -> None:
        """Main loop running in the background thread."""
        logger.info("Background poll loop entered")

        while not self._stop_event.is_set():
            with self._lock:
                due = self._scheduler.needs_refresh()
                wait_s = self._scheduler.seconds_until_due()

            if not due:
                # Interruptible by stop_event
                if self._stop_event.wait(timeout=min(wait_s, _MAX_IDLE_WAIT_S)):
                    break
                continue

            self.poll_once()

        logger.info("Background poll loop exited")

    def poll_once(self) -> BatchResult | None:
        """Run one fetch cycle and enqueue the result. Returns the batch."""
        with self._lock:
            self._scheduler.mark_attempt()
            fetcher = self._fetcher

        symbols = list(self._symbols_fn())
        if not symbols:
            self.last_poll_status = "no symbols"
            return None

        try:
            batch = fetcher.fetch_quotes(symbols)
        except Exception as exc:
            _safe = sanitize(str(exc))
            logger.exception("Background poll failed: %s", _safe)
            self.last_poll_error = _safe
            self.last_poll_status = "ERROR"
            self.last_poll_ts = time.time()
            return None

        self.poll_count += 1
        self.last_poll_ts = time.time()
        if batch.all_failed:
            self.last_poll_error = f"all {len(batch.failures)} symbols failed"
            self.last_poll_status = "ERROR"
        else:
            with self._lock:
                self._scheduler.mark_success()
            self.last_poll_error = ""
            self.last_poll_status = f"{len(batch.quotes)} ok / {len(batch.failures)} failed"

        try:
            self._queue.put_nowait(batch)
        except queue.Full:
            logger.warning("BG poller queue full, dropping batch of %d", len(batch))
        return batch
