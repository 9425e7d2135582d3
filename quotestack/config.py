"""Configuration for the quote terminal.

Two layers:

* ``Config`` – process tunables read from environment variables at
  instantiation time (refresh cadence, HTTP limits, credentials).
* ``WatchConfig`` – the user's TOML watchlist file: symbols, holdings,
  groups, persisted alerts plus display and colour preferences.

Command-line flags override both (see ``quotestack.run``).
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .common_types import Holding
from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "QUOTESTACK_CONFIG"


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


@dataclass(frozen=True)
class Config:
    """Process configuration – one instance per process.

    Environment variables are read at **instantiation** time so callers
    (and tests) can set them before creating a ``Config``.
    """

    # ── Polling cadence ─────────────────────────────────────────
    refresh_interval_s: float = field(default_factory=lambda: _env_float("QUOTESTACK_REFRESH_S", 5.0))
    jitter_pct: float = field(default_factory=lambda: _env_float("QUOTESTACK_JITTER_PCT", 0.10))

    # ── HTTP ────────────────────────────────────────────────────
    timeout_s: float = field(default_factory=lambda: _env_float("QUOTESTACK_TIMEOUT_S", 10.0))
    max_concurrency: int = field(default_factory=lambda: _env_int("QUOTESTACK_MAX_CONCURRENCY", 12))

    # ── Cache ───────────────────────────────────────────────────
    cache_ttl_s: float = field(default_factory=lambda: _env_float("QUOTESTACK_CACHE_TTL_S", 30.0))

    # ── Market-cap enrichment (repr=False to prevent accidental logging)
    enrich_market_cap: bool = field(
        default_factory=lambda: os.getenv("QUOTESTACK_ENRICH_MARKET_CAP", "1") == "1",
    )
    fmp_api_key: str = field(default_factory=lambda: os.getenv("FMP_API_KEY", "demo"), repr=False)

    # ── Alerts ──────────────────────────────────────────────────
    audio_alerts: bool = field(default_factory=lambda: os.getenv("QUOTESTACK_AUDIO_ALERTS", "0") == "1")

    # ── Secure mode: view only, no watchlist / alert edits ─────
    secure_mode: bool = field(default_factory=lambda: os.getenv("QUOTESTACK_SECURE", "0") == "1")

    # ── Watchlist file override ─────────────────────────────────
    config_path: str = field(default_factory=lambda: os.getenv(CONFIG_ENV_VAR, ""))


# ═══════════════════════════════════════════════════════════════════════════
# Watchlist file
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GeneralSettings:
    # None = not set in the file; fall back to the env ``Config``.
    refresh_interval: Optional[float] = None
    timeout: Optional[float] = None
    currency: str = "USD"


@dataclass
class DisplaySettings:
    show_header: bool = True
    show_fundamentals: bool = False
    show_holdings: bool = False
    show_separators: bool = True
    sort_by: str = "change_percent"
    sort_descending: bool = True


@dataclass
class ColorSettings:
    gain: str = "#00ff00"
    loss: str = "#ff0000"
    neutral: str = "#ffffff"
    header: str = "#1e90ff"
    border: str = "#444444"


@dataclass
class WatchConfig:
    """Parsed contents of the TOML watchlist file (all sections optional)."""

    general: GeneralSettings = field(default_factory=GeneralSettings)
    symbols: List[str] = field(default_factory=list)
    holdings: List[Holding] = field(default_factory=list)
    display: DisplaySettings = field(default_factory=DisplaySettings)
    colors: ColorSettings = field(default_factory=ColorSettings)
    groups: Dict[str, List[str]] = field(default_factory=dict)
    alerts: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def all_symbols(self) -> List[str]:
        """Watchlist, then holding symbols, then group symbols; first-seen order."""
        seen: Dict[str, None] = dict.fromkeys(self.symbols)
        for h in self.holdings:
            seen.setdefault(h.symbol, None)
        for members in self.groups.values():
            for sym in members:
                seen.setdefault(sym, None)
        return list(seen)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WatchConfig":
        """Build from a decoded TOML document; raises ``ConfigError`` on bad shapes."""
        try:
            general = GeneralSettings(**_known(GeneralSettings, data.get("general", {})))
            display = DisplaySettings(**_known(DisplaySettings, data.get("display", {})))
            colors = ColorSettings(**_known(ColorSettings, data.get("colors", {})))

            symbols = [str(s) for s in (data.get("watchlist") or {}).get("symbols", [])]
            holdings = [
                Holding(
                    symbol=str(row["symbol"]),
                    quantity=float(row["quantity"]),
                    cost_basis=float(row["cost_basis"]),
                )
                for row in data.get("holdings", [])
            ]
            groups = {
                str(name): [str(s) for s in members]
                for name, members in (data.get("groups") or {}).items()
            }
            alerts = {
                str(sym): [dict(row) for row in rows]
                for sym, rows in (data.get("alerts") or {}).items()
            }
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

        return cls(
            general=general,
            symbols=symbols,
            holdings=holdings,
            display=display,
            colors=colors,
            groups=groups,
            alerts=alerts,
        )


def _known(kind: type, section: Any) -> Dict[str, Any]:
    """Keep only keys *kind* declares; unknown keys are ignored."""
    if not isinstance(section, Mapping):
        raise TypeError(f"[{kind.__name__}] must be a table")
    names = set(kind.__dataclass_fields__)
    return {k: v for k, v in section.items() if k in names}


def default_config_path() -> Path:
    """``$QUOTESTACK_CONFIG`` or ``~/.config/quotestack/config.toml``."""
    override = os.getenv(CONFIG_ENV_VAR, "")
    if override:
        return Path(override).expanduser()
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "quotestack" / "config.toml"


def load_watch_config(path: str | Path) -> WatchConfig:
    """Read and parse *path*. Raises ``ConfigError`` if unreadable or invalid."""
    p = Path(path).expanduser()
    try:
        raw = p.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {p}: {exc}") from exc
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Failed to parse config file {p}: {exc}") from exc
    cfg = WatchConfig.from_mapping(data)
    logger.info(
        "Loaded config %s: %d symbols, %d holdings, %d groups",
        p, len(cfg.symbols), len(cfg.holdings), len(cfg.groups),
    )
    return cfg


def load_watch_config_or_default(path: Optional[str | Path] = None) -> WatchConfig:
    """Best-effort load: missing or broken files fall back to defaults."""
    p = Path(path).expanduser() if path else default_config_path()
    if not p.exists():
        return WatchConfig()
    try:
        return load_watch_config(p)
    except ConfigError as exc:
        logger.warning("Failed to load config, using defaults: %s", exc)
        return WatchConfig()


def sample_config() -> str:
    """Example watchlist file content."""
    return _SAMPLE_CONFIG


_SAMPLE_CONFIG = """\
# quotestack configuration

[general]
# Refresh interval in seconds (minimum 1.0)
refresh_interval = 5.0
# API timeout in seconds
timeout = 10
currency = "USD"

[watchlist]
symbols = ["AAPL", "GOOGL", "MSFT", "AMZN", "NVDA", "BTC-USD", "ETH-USD"]

# Portfolio holdings (optional)
[[holdings]]
symbol = "AAPL"
quantity = 10
cost_basis = 150.00

[[holdings]]
symbol = "BTC-USD"
quantity = 0.5
cost_basis = 30000.00

[display]
show_header = true
show_fundamentals = false
show_holdings = false
show_separators = true
# symbol, name, price, change, change_percent, volume, market_cap
sort_by = "change_percent"
sort_descending = true

[colors]
gain = "#00ff00"
loss = "#ff0000"
neutral = "#ffffff"
header = "#1e90ff"
border = "#444444"

[groups]
tech = ["AAPL", "GOOGL", "MSFT", "NVDA"]
crypto = ["BTC-USD", "ETH-USD", "SOL-USD"]

# Price alerts: condition is above, below or equal
[alerts]
AAPL = [{ condition = "above", price = 200.0 }]
"BTC-USD" = [{ condition = "below", price = 25000.0 }]
"""
