"""signalcheck — application configuration.

Loads .env variables into a typed config object.
Validates numeric settings on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


DEFAULT_SYMBOLS: tuple[str, ...] = (
    "BTC/USDT",
    "BNB/USDT",
    "ETH/USDT",
    "XRP/USDT",
    "SOL/USDT",
    "SUI/USDT",
    "DOGE/USDT",
    "ADA/USDT",
    "ASTER/USDT",
    "PEPE/USDT",
    "ENA/USDT",
)

# Binance kline intervals a session range can be read from
RANGE_HOURS = (1, 2, 4, 6, 8, 12)


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    binance_base_url: str = "https://api.binance.com"
    symbols: tuple[str, ...] = DEFAULT_SYMBOLS
    rsi_period: int = 14
    rsi_ma_period: int = 14
    oversold_threshold: float = 30.0
    oversold_days: int = 3
    breakout_days: int = 3
    session_utc_offset_hours: int = 7  # session clock is UTC+7 (Bangkok)
    session_start_hour: int = 11
    session_range_hours: int = 4
    max_risk_pct: float = 1.0
    rr_ratio: float = 2.0
    lookahead_days: int = 7
    request_delay_seconds: float = 0.25
    poll_interval_seconds: int = 60
    cache_db_path: str = "data/signalcheck.db"
    log_level: str = "INFO"
    api_port: int = 8080


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'") from None


def _symbols(default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get("SYMBOLS")
    if not raw:
        return default
    symbols = tuple(s.strip().upper() for s in raw.split(",") if s.strip())
    if not symbols:
        raise ValueError("SYMBOLS must list at least one trading pair")
    return symbols


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Every variable is optional; market data comes from public endpoints.
    Raises ``ValueError`` naming the offending variable when a value cannot
    be parsed or is out of range.
    """
    load_dotenv(dotenv_path=env_path)

    config = Config(
        binance_base_url=os.environ.get(
            "BINANCE_BASE_URL", "https://api.binance.com"
        ).rstrip("/"),
        symbols=_symbols(DEFAULT_SYMBOLS),
        rsi_period=_int("RSI_PERIOD", 14),
        rsi_ma_period=_int("RSI_MA_PERIOD", 14),
        oversold_threshold=_float("OVERSOLD_THRESHOLD", 30.0),
        oversold_days=_int("OVERSOLD_DAYS", 3),
        breakout_days=_int("BREAKOUT_DAYS", 3),
        session_utc_offset_hours=_int("SESSION_UTC_OFFSET_HOURS", 7),
        session_start_hour=_int("SESSION_START_HOUR", 11),
        session_range_hours=_int("SESSION_RANGE_HOURS", 4),
        max_risk_pct=_float("MAX_RISK_PCT", 1.0),
        rr_ratio=_float("RR_RATIO", 2.0),
        lookahead_days=_int("LOOKAHEAD_DAYS", 7),
        request_delay_seconds=_float("REQUEST_DELAY_SECONDS", 0.25),
        poll_interval_seconds=_int("POLL_INTERVAL_SECONDS", 60),
        cache_db_path=os.environ.get("CACHE_DB_PATH", "data/signalcheck.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=_int("API_PORT", 8080),
    )
    _validate(config)
    return config


def _validate(config: Config) -> None:
    if config.rsi_period < 2:
        raise ValueError(f"RSI_PERIOD must be >= 2, got {config.rsi_period}")
    if config.rsi_ma_period < 1:
        raise ValueError(
            f"RSI_MA_PERIOD must be >= 1, got {config.rsi_ma_period}"
        )
    if not 0 <= config.oversold_threshold <= 100:
        raise ValueError(
            f"OVERSOLD_THRESHOLD must be within 0-100, got {config.oversold_threshold}"
        )
    if not -12 <= config.session_utc_offset_hours <= 14:
        raise ValueError(
            "SESSION_UTC_OFFSET_HOURS must be within -12..14, "
            f"got {config.session_utc_offset_hours}"
        )
    if not 0 <= config.session_start_hour <= 23:
        raise ValueError(
            f"SESSION_START_HOUR must be within 0-23, got {config.session_start_hour}"
        )
    if config.session_range_hours not in RANGE_HOURS:
        raise ValueError(
            f"SESSION_RANGE_HOURS must be one of {RANGE_HOURS}, "
            f"got {config.session_range_hours}"
        )
    utc_start = (config.session_start_hour - config.session_utc_offset_hours) % 24
    if utc_start % config.session_range_hours:
        raise ValueError(
            f"SESSION_START_HOUR {config.session_start_hour} is {utc_start}:00 UTC, "
            f"which does not open a {config.session_range_hours}h candle"
        )
    if config.max_risk_pct <= 0:
        raise ValueError(f"MAX_RISK_PCT must be positive, got {config.max_risk_pct}")
    if config.rr_ratio <= 0:
        raise ValueError(f"RR_RATIO must be positive, got {config.rr_ratio}")
    for name in ("oversold_days", "breakout_days", "lookahead_days"):
        if getattr(config, name) < 1:
            raise ValueError(f"{name.upper()} must be >= 1, got {getattr(config, name)}")
