"""Price alerts: definitions, per-cycle evaluation and the setup flow.

Alerts are plain ``(symbol, condition, target)`` triples kept in insertion
order per symbol.  They are never removed automatically and fire again on
every evaluation pass while their condition stays true.

The notifier handed to ``AlertEngine`` must return immediately (the
terminal bell and webhook channels dispatch on their own threads).  Any
exception it raises is logged and dropped so a broken channel can never
stall or break a refresh cycle.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .common_types import Quote

logger = logging.getLogger(__name__)

EQUAL_TOLERANCE = 0.01


class AlertCondition(enum.Enum):
    ABOVE = "above"
    BELOW = "below"
    EQUAL = "equal"

    @classmethod
    def parse(cls, raw: str) -> "AlertCondition":
        """Accept ``above``/``below``/``equal`` or ``>``/``<``/``=`` (any case)."""
        key = str(raw).strip().lower()
        key = _CONDITION_ALIASES.get(key, key)
        return cls(key)

    def matches(self, price: float, target: float) -> bool:
        if self is AlertCondition.ABOVE:
            return price >= target
        if self is AlertCondition.BELOW:
            return price <= target
        return abs(price - target) < EQUAL_TOLERANCE

    @property
    def symbol(self) -> str:
        return {"above": "≥", "below": "≤", "equal": "="}[self.value]


_CONDITION_ALIASES = {">": "above", "<": "below", "=": "equal", "==": "equal"}


@dataclass(frozen=True)
class Alert:
    symbol: str
    condition: AlertCondition
    target: float

    def describe(self) -> str:
        return f"{self.symbol} {self.condition.symbol} {self.target:.2f}"


@dataclass(frozen=True)
class TriggeredAlert:
    alert: Alert
    price: float

    @property
    def symbol(self) -> str:
        return self.alert.symbol

    def message(self) -> str:
        return (
            f"{self.alert.symbol} is {self.alert.condition.value} "
            f"{self.alert.target:.2f} (now {self.price:.2f})"
        )


Notifier = Callable[[TriggeredAlert], Any]


class AlertEngine:
    """Holds the alert table and re-evaluates it against fresh quotes."""

    def __init__(self, notifier: Optional[Notifier] = None, notify_enabled: bool = False) -> None:
        self.notifier = notifier
        self.notify_enabled = notify_enabled
        self._alerts: Dict[str, List[Alert]] = {}
        self.triggered: List[TriggeredAlert] = []

    # ── Table management ────────────────────────────────────────

    def add_alert(self, symbol: str, condition: AlertCondition, target: float) -> Alert:
        alert = Alert(symbol=symbol, condition=condition, target=float(target))
        self._alerts.setdefault(symbol, []).append(alert)
        logger.info("Alert added: %s", alert.describe())
        return alert

    def remove_alert(self, symbol: str, index: int) -> Optional[Alert]:
        """Remove the *index*-th alert for *symbol*; None if out of range."""
        rows = self._alerts.get(symbol)
        if not rows or not 0 <= index < len(rows):
            return None
        alert = rows.pop(index)
        if not rows:
            del self._alerts[symbol]
        return alert

    def clear_alerts(self, symbol: str) -> int:
        return len(self._alerts.pop(symbol, []))

    def alerts_for(self, symbol: str) -> List[Alert]:
        return list(self._alerts.get(symbol, ()))

    def all_alerts(self) -> List[Alert]:
        return [a for rows in self._alerts.values() for a in rows]

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._alerts.values())

    # ── Persistence ─────────────────────────────────────────────

    def load(self, mapping: Mapping[str, Iterable[Mapping[str, Any]]]) -> int:
        """Load ``{symbol: [{condition, price}, ...]}``; bad rows are skipped."""
        loaded = 0
        for symbol, rows in mapping.items():
            for row in rows:
                try:
                    cond = AlertCondition.parse(row["condition"])
                    target = float(row["price"])
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping invalid alert for %s: %s", symbol, exc)
                    continue
                self.add_alert(symbol, cond, target)
                loaded += 1
        return loaded

    def to_config(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            sym: [{"condition": a.condition.value, "price": a.target} for a in rows]
            for sym, rows in self._alerts.items()
        }

    # ── Evaluation ──────────────────────────────────────────────

    def evaluate(self, quotes: Iterable[Quote]) -> List[TriggeredAlert]:
        """Rebuild ``triggered`` from scratch for *quotes*."""
        self.triggered = []
        for quote in quotes:
            for alert in self._alerts.get(quote.symbol, ()):
                if alert.condition.matches(quote.price, alert.target):
                    self.triggered.append(TriggeredAlert(alert=alert, price=quote.price))

        if self.triggered and self.notify_enabled and self.notifier is not None:
            for hit in self.triggered:
                try:
                    self.notifier(hit)
                except Exception as exc:
                    logger.warning("Alert notifier failed for %s: %s", hit.symbol, exc)
        return list(self.triggered)


# ═══════════════════════════════════════════════════════════════════════════
# Interactive setup flow
# ═══════════════════════════════════════════════════════════════════════════

CONDITION_CHOICES = (AlertCondition.ABOVE, AlertCondition.BELOW, AlertCondition.EQUAL)


@dataclass(frozen=True)
class SetupIdle:
    pass


@dataclass(frozen=True)
class SelectingCondition:
    symbol: str
    index: int = 0

    @property
    def condition(self) -> AlertCondition:
        return CONDITION_CHOICES[self.index]


@dataclass(frozen=True)
class EnteringPrice:
    symbol: str
    condition: AlertCondition
    buffer: str = ""


SetupState = Union[SetupIdle, SelectingCondition, EnteringPrice]


class AlertSetupFlow:
    """Two-step modal: pick a condition, then type a target price.

    Every transition that does not apply to the current state is ignored.
    """

    def __init__(self) -> None:
        self.state: SetupState = SetupIdle()

    @property
    def active(self) -> bool:
        return not isinstance(self.state, SetupIdle)

    def begin(self, symbol: str) -> None:
        self.state = SelectingCondition(symbol=symbol, index=0)

    def move(self, delta: int) -> None:
        st = self.state
        if isinstance(st, SelectingCondition):
            idx = (st.index + delta) % len(CONDITION_CHOICES)
            self.state = SelectingCondition(symbol=st.symbol, index=idx)

    def choose(self) -> None:
        st = self.state
        if isinstance(st, SelectingCondition):
            self.state = EnteringPrice(symbol=st.symbol, condition=st.condition)

    def type_char(self, ch: str) -> None:
        st = self.state
        if isinstance(st, EnteringPrice) and len(ch) == 1 and (ch.isdigit() or ch == "."):
            self.state = EnteringPrice(st.symbol, st.condition, st.buffer + ch)

    def backspace(self) -> None:
        st = self.state
        if isinstance(st, EnteringPrice) and st.buffer:
            self.state = EnteringPrice(st.symbol, st.condition, st.buffer[:-1])

    def confirm(self) -> Optional[Alert]:
        """Finish the flow. Returns the new Alert, or None if the price is invalid."""
        st = self.state
        self.state = SetupIdle()
        if not isinstance(st, EnteringPrice):
            return None
        try:
            target = float(st.buffer)
        except ValueError:
            return None
        if not math.isfinite(target) or target < 0:
            return None
        return Alert(symbol=st.symbol, condition=st.condition, target=target)

    def cancel(self) -> None:
        self.state = SetupIdle()

    def submit(self, symbol: str, condition: AlertCondition, price_text: str) -> Optional[Alert]:
        """Drive the whole flow from one form submission.

        Text with anything but digits and ``.`` is rejected outright
        rather than filtered. Returns the new Alert or None.
        """
        text = price_text.strip()
        self.begin(symbol)
        self.move(CONDITION_CHOICES.index(condition))
        self.choose()
        if not text or not all(ch.isdigit() or ch == "." for ch in text):
            self.cancel()
            return None
        for ch in text:
            self.type_char(ch)
        return self.confirm()
