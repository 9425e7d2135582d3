"""Alert notifications for the quote terminal.

Two channels, both optional:

* **Terminal bell** – BEL characters written to stdout, one to three
  beeps depending on the alert kind.
* **Webhook** – JSON POST to any receiver (Discord, Slack relay, ...).

Configuration is read from environment variables:

    QUOTESTACK_AUDIO_ALERTS=1
    QUOTESTACK_ALERT_WEBHOOK_URL=https://discord.com/api/webhooks/...
    QUOTESTACK_NOTIFY_THROTTLE_S=300

Every dispatch happens on a daemon thread, so ``AlertNotifier.__call__``
returns immediately and a slow or failing channel never holds up the
refresh cycle.
"""
from __future__ import annotations

import enum
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from quotestack.alerts import AlertCondition, TriggeredAlert

logger = logging.getLogger(__name__)

BEEP_GAP_S = 0.2

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotifyConfig:
    """Notification settings (reads env at instantiation)."""

    audio_enabled: bool = field(
        default_factory=lambda: os.getenv("QUOTESTACK_AUDIO_ALERTS", "0") == "1",
    )
    webhook_url: str = field(
        default_factory=lambda: os.getenv("QUOTESTACK_ALERT_WEBHOOK_URL", ""),
        repr=False,
    )
    throttle_s: int = field(
        default_factory=lambda: int(os.getenv("QUOTESTACK_NOTIFY_THROTTLE_S", "300")),
    )
    webhook_timeout_s: float = 5.0

    @property
    def has_any_channel(self) -> bool:
        return self.audio_enabled or bool(self.webhook_url)


# ---------------------------------------------------------------------------
# Terminal bell
# ---------------------------------------------------------------------------


class AlertSound(enum.Enum):
    SINGLE = 1
    DOUBLE = 2
    TRIPLE = 3


def sound_for(condition: AlertCondition) -> AlertSound:
    """Exact-price hits get the loudest pattern."""
    if condition is AlertCondition.EQUAL:
        return AlertSound.TRIPLE
    if condition is AlertCondition.BELOW:
        return AlertSound.DOUBLE
    return AlertSound.SINGLE


def play_sound(sound: AlertSound, stream: Any = None) -> None:
    """Write ``sound.value`` BEL characters, 200 ms apart (blocking)."""
    out = stream if stream is not None else sys.stdout
    for i in range(sound.value):
        out.write("\a")
        out.flush()
        if i + 1 < sound.value:
            time.sleep(BEEP_GAP_S)


def play_sound_async(sound: AlertSound) -> threading.Thread:
    """Play *sound* on a daemon thread and return immediately."""
    t = threading.Thread(target=play_sound, args=(sound,), name="alert-bell", daemon=True)
    t.start()
    return t


# ---------------------------------------------------------------------------
# Throttle state (webhook channel only)
# ---------------------------------------------------------------------------

_last_notified: dict[str, float] = {}
_throttle_lock = threading.Lock()
_THROTTLE_DICT_MAX = 500


def _throttle_key(hit: TriggeredAlert) -> str:
    a = hit.alert
    return f"{a.symbol}:{a.condition.value}:{a.target}"


def _is_throttled(key: str, throttle_s: int) -> bool:
    now = time.time()
    with _throttle_lock:
        last = _last_notified.get(key, 0.0)
    return (now - last) < throttle_s


def _mark_notified(key: str) -> None:
    with _throttle_lock:
        _last_notified[key] = time.time()
        # Evict old entries
        if len(_last_notified) > _THROTTLE_DICT_MAX:
            now = time.time()
            stale = [k for k, v in _last_notified.items() if (now - v) > 3600]
            for k in stale:
                del _last_notified[k]


def reset_throttle() -> None:
    """Clear the throttle state (used on session reset)."""
    with _throttle_lock:
        _last_notified.clear()


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


def _mask_url(url: str) -> str:
    """Mask query params for safe logging."""
    return url.split("?")[0] + ("?***" if "?" in url else "")


def format_alert_message(hit: TriggeredAlert) -> str:
    return f"🔔 ALERT {hit.message()}"


def send_webhook(
    url: str,
    hit: TriggeredAlert,
    timeout: float = 5.0,
    _client: httpx.Client | None = None,
) -> bool:
    """POST one triggered alert as JSON. Returns True on a 2xx answer."""
    if not url:
        return False
    payload = {
        "content": format_alert_message(hit),
        "symbol": hit.alert.symbol,
        "condition": hit.alert.condition.value,
        "target": hit.alert.target,
        "price": hit.price,
        "fired_at": time.time(),
    }
    managed = _client is None
    client = _client if _client is not None else httpx.Client(timeout=timeout)
    try:
        r = client.post(url, json=payload)
        r.raise_for_status()
        logger.info("Alert webhook sent for %s (%s)", hit.alert.symbol, _mask_url(url))
        return True
    except httpx.HTTPStatusError as exc:
        logger.warning("Alert webhook HTTP %d (%s)", exc.response.status_code, _mask_url(url))
        return False
    except httpx.HTTPError as exc:
        logger.warning("Alert webhook failed: %s", type(exc).__name__)
        return False
    finally:
        if managed:
            client.close()


# ---------------------------------------------------------------------------
# Notifier handed to AlertEngine
# ---------------------------------------------------------------------------


class AlertNotifier:
    """Callable that fans a ``TriggeredAlert`` out to the enabled channels.

    The bell rings on every trigger (alerts re-fire each cycle while
    their condition holds); the webhook is throttled per alert.
    """

    def __init__(self, config: NotifyConfig | None = None) -> None:
        self.config = config if config is not None else NotifyConfig()
        self.sent = 0

    @property
    def enabled(self) -> bool:
        return self.config.has_any_channel

    def __call__(self, hit: TriggeredAlert) -> None:
        cfg = self.config
        if cfg.audio_enabled:
            play_sound_async(sound_for(hit.alert.condition))
        if cfg.webhook_url:
            key = _throttle_key(hit)
            if _is_throttled(key, cfg.throttle_s):
                return
            _mark_notified(key)
            threading.Thread(
                target=self._dispatch_webhook,
                args=(hit,),
                name="alert-webhook",
                daemon=True,
            ).start()

    def _dispatch_webhook(self, hit: TriggeredAlert) -> None:
        if send_webhook(self.config.webhook_url, hit, timeout=self.config.webhook_timeout_s):
            self.sent += 1
