"""Configuration management for the trading core."""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_WATCHLIST = [
    "SPY", "QQQ", "AAPL", "MSFT", "GOOGL", "AMZN", "TSLA", "NVDA", "META", "JPM",
    "BAC", "XLF", "XLE", "IWM", "DIA", "GLD", "SLV", "VXX", "TLT",
]


@dataclass
class BrokerConfig:
    api_url: str = "https://api.tastyworks.com"
    session_token: str = ""
    account_id: str = ""
    timeout_seconds: float = 15.0


@dataclass
class RiskConfig:
    # Deployment-level limits. Per-account PortfolioProtection settings can only
    # tighten these, never loosen them.
    min_cash_reserve_pct: float = 25.0
    max_single_trade_pct: float = 0.5
    max_daily_loss_pct: float = 3.0
    max_total_exposure_pct: float = 75.0
    max_concurrent_positions: int = 20
    max_drawdown_pct: float = 10.0
    var_daily_limit_pct: float = 2.0
    max_symbol_concentration_pct: float = 20.0
    pdt_equity_threshold: float = 25_000.0
    maintenance_warning_ratio: float = 0.8
    option_risk_weight: float = 0.3
    equity_risk_weight: float = 0.1
    trade_var_fraction: float = 0.5
    fallback_trade_cost: float = 1000.0
    emergency_stop_expiry_hours: float = 24.0


@dataclass
class ScannerConfig:
    enabled: bool = True
    watchlist: list = field(default_factory=lambda: list(DEFAULT_WATCHLIST))
    quote_freshness_minutes: int = 10
    min_dte: int = 30
    max_dte: int = 45
    put_short_strike_factor: float = 0.84
    call_short_strike_factor: float = 1.16
    min_pop: float = 0.65
    min_risk_reward: float = 0.33
    max_loss_pct_of_nav: float = 0.5
    max_trades_per_cycle: int = 5
    max_per_sector: int = 2
    default_nav: float = 100_000.0
    # False keeps the selection unchanged when the Greeks proxy is breached.
    rebalance_greeks: bool = False


@dataclass
class ScheduleConfig:
    scan_interval_minutes: int = 5
    market_open: str = "09:30"
    market_close: str = "16:00"
    timezone: str = "America/New_York"
    trading_days: list = field(
        default_factory=lambda: [
            "monday", "tuesday", "wednesday", "thursday", "friday"
        ]
    )
    auto_trading_enabled: bool = False
    notify_opportunities: bool = True


@dataclass
class AlertsConfig:
    enabled: bool = False
    webhook_url: str = ""
    webhook_format: str = "generic"
    min_level: str = "WARNING"
    timeout_seconds: int = 5
    trade_notifications: bool = True
    opportunity_notifications: bool = True


@dataclass
class StorageConfig:
    data_dir: str = "data"


@dataclass
class BotConfig:
    user_id: str = "default"
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"
    log_file: str = "logs/tradecore.log"


def load_config(config_path: str = "config.yaml") -> BotConfig:
    """Load configuration from YAML file and environment variables."""
    load_dotenv()

    cfg = BotConfig()

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            raw = yaml.safe_load(f)
        if raw:
            _apply_yaml(cfg, raw)

    # Credentials always come from the environment.
    cfg.broker.api_url = os.getenv("TASTYTRADE_API_URL", cfg.broker.api_url)
    cfg.broker.session_token = os.getenv(
        "TASTYTRADE_SESSION_TOKEN", cfg.broker.session_token
    )
    cfg.broker.account_id = os.getenv("TASTYTRADE_ACCOUNT_ID", cfg.broker.account_id)
    cfg.user_id = os.getenv("TRADECORE_USER_ID", cfg.user_id)

    cfg.schedule.auto_trading_enabled = _env_bool(
        "AUTO_TRADING_ENABLED", cfg.schedule.auto_trading_enabled
    )
    cfg.alerts.enabled = _env_bool("ALERTS_ENABLED", cfg.alerts.enabled)
    cfg.alerts.webhook_url = os.getenv("ALERTS_WEBHOOK_URL", cfg.alerts.webhook_url)

    cfg.risk.min_cash_reserve_pct = _env_float(
        "RISK_MIN_CASH_RESERVE_PCT", cfg.risk.min_cash_reserve_pct, minimum=0.0, maximum=100.0
    )
    cfg.risk.max_single_trade_pct = _env_float(
        "RISK_MAX_SINGLE_TRADE_PCT", cfg.risk.max_single_trade_pct, minimum=0.0, maximum=100.0
    )
    cfg.risk.max_daily_loss_pct = _env_float(
        "RISK_MAX_DAILY_LOSS_PCT", cfg.risk.max_daily_loss_pct, minimum=0.0, maximum=100.0
    )
    cfg.risk.max_total_exposure_pct = _env_float(
        "RISK_MAX_TOTAL_EXPOSURE_PCT", cfg.risk.max_total_exposure_pct, minimum=0.0, maximum=100.0
    )
    cfg.risk.max_concurrent_positions = _env_int(
        "RISK_MAX_CONCURRENT_POSITIONS", cfg.risk.max_concurrent_positions, minimum=1
    )
    cfg.risk.max_drawdown_pct = _env_float(
        "RISK_MAX_DRAWDOWN_PCT", cfg.risk.max_drawdown_pct, minimum=0.0, maximum=100.0
    )
    cfg.risk.var_daily_limit_pct = _env_float(
        "RISK_VAR_DAILY_LIMIT_PCT", cfg.risk.var_daily_limit_pct, minimum=0.0, maximum=100.0
    )

    _normalize_config(cfg)

    return cfg


def _apply_yaml(cfg: BotConfig, raw: dict) -> None:
    """Apply raw YAML dict onto the BotConfig."""
    cfg.user_id = str(raw.get("user_id", cfg.user_id))

    sections = {
        "broker": cfg.broker,
        "risk": cfg.risk,
        "scanner": cfg.scanner,
        "schedule": cfg.schedule,
        "alerts": cfg.alerts,
        "storage": cfg.storage,
    }
    for name, target in sections.items():
        values = raw.get(name, {})
        if not isinstance(values, dict):
            logger.warning("Ignoring non-mapping config section %r.", name)
            continue
        for key, val in values.items():
            if hasattr(target, key):
                setattr(target, key, val)
            else:
                logger.warning("Unknown config key %s.%s ignored.", name, key)

    log_cfg = raw.get("logging", {})
    if log_cfg:
        cfg.log_level = log_cfg.get("level", cfg.log_level)
        cfg.log_file = log_cfg.get("file", cfg.log_file)


def _env_bool(name: str, default: bool) -> bool:
    """Parse a boolean environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(
    name: str,
    default: int,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    """Parse an integer environment variable with optional bounds."""
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value.strip())
    except ValueError:
        logger.warning("Invalid integer for %s=%r. Using default %r.", name, value, default)
        return default

    if minimum is not None and parsed < minimum:
        return minimum
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def _env_float(
    name: str,
    default: float,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    """Parse a float environment variable with optional bounds."""
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = float(value.strip())
    except ValueError:
        logger.warning("Invalid float for %s=%r. Using default %r.", name, value, default)
        return default

    if minimum is not None and parsed < minimum:
        return minimum
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def _normalize_config(cfg: BotConfig) -> None:
    """Normalize enum-like fields and clamp numeric settings to sane bounds."""
    cfg.log_level = _normalize_choice(
        cfg.log_level,
        allowed={"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"},
        default="INFO",
        field_name="logging.level",
        transform=str.upper,
    )
    cfg.alerts.webhook_format = _normalize_choice(
        cfg.alerts.webhook_format,
        allowed={"generic", "slack", "discord"},
        default="generic",
        field_name="alerts.webhook_format",
    )
    cfg.alerts.min_level = _normalize_choice(
        cfg.alerts.min_level,
        allowed={"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"},
        default="WARNING",
        field_name="alerts.min_level",
        transform=str.upper,
    )

    cfg.broker.api_url = str(cfg.broker.api_url or "").rstrip("/")
    cfg.broker.timeout_seconds = max(1.0, float(cfg.broker.timeout_seconds))

    risk = cfg.risk
    risk.max_concurrent_positions = max(1, int(risk.max_concurrent_positions))
    expiry_hours = float(risk.emergency_stop_expiry_hours)
    if not (math.isfinite(expiry_hours) and expiry_hours >= 1.0):
        logger.warning(
            "Invalid risk.emergency_stop_expiry_hours=%r; using 1 hour minimum", expiry_hours
        )
        expiry_hours = 1.0
    risk.emergency_stop_expiry_hours = expiry_hours
    risk.fallback_trade_cost = max(0.0, float(risk.fallback_trade_cost))

    scanner = cfg.scanner
    scanner.watchlist = _normalize_symbol_list(
        scanner.watchlist, default=list(DEFAULT_WATCHLIST)
    )
    scanner.quote_freshness_minutes = max(1, int(scanner.quote_freshness_minutes))
    scanner.min_dte = max(0, int(scanner.min_dte))
    scanner.max_dte = max(scanner.min_dte, int(scanner.max_dte))
    scanner.max_trades_per_cycle = max(1, int(scanner.max_trades_per_cycle))
    scanner.max_per_sector = max(1, int(scanner.max_per_sector))
    scanner.min_pop = max(0.0, min(1.0, float(scanner.min_pop)))
    scanner.rebalance_greeks = bool(scanner.rebalance_greeks)

    cfg.schedule.scan_interval_minutes = max(1, int(cfg.schedule.scan_interval_minutes))
    cfg.schedule.trading_days = _normalize_trading_days(cfg.schedule.trading_days)


def _normalize_choice(
    value: object,
    allowed: set[str],
    default: str,
    field_name: str,
    transform=lambda s: s.lower(),
) -> str:
    """Normalize an enum-like string field and validate allowed values."""
    normalized = transform(str(value).strip()) if value is not None else ""
    if normalized in allowed:
        return normalized

    logger.warning(
        "Invalid %s=%r. Falling back to %r.",
        field_name,
        value,
        default,
    )
    return default


def _normalize_symbol_list(value: object, default: list[str]) -> list[str]:
    """Normalize a list of ticker strings."""
    if not isinstance(value, list):
        return default

    normalized: list[str] = []
    seen: set[str] = set()
    for raw in value:
        symbol = str(raw).strip().upper()
        if not symbol or symbol in seen:
            continue
        seen.add(symbol)
        normalized.append(symbol)
    return normalized or default


def _normalize_trading_days(value: object) -> list[str]:
    """Normalize configured trading days to lowercase weekday names."""
    valid = {"monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}
    if not isinstance(value, list):
        return ["monday", "tuesday", "wednesday", "thursday", "friday"]

    normalized: list[str] = []
    seen: set[str] = set()
    for raw in value:
        day = str(raw).strip().lower()
        if day in valid and day not in seen:
            seen.add(day)
            normalized.append(day)

    return normalized or ["monday", "tuesday", "wednesday", "thursday", "friday"]
