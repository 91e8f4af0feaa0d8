"""Per-account portfolio protection settings with range-checked fields."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Optional

from tradecore.errors import ProtectionRangeError
from tradecore.number_utils import safe_float

logger = logging.getLogger(__name__)

# field -> (lower, lower_inclusive, upper, upper_inclusive)
_RANGES = {
    "cash_reserve_percentage": (20.0, True, 50.0, True),
    "max_daily_loss_percentage": (0.0, False, 15.0, True),
    "max_single_trade_percentage": (0.0, False, 20.0, True),
    "max_portfolio_exposure_percentage": (50.0, True, 85.0, True),
    "max_position_concentration_percentage": (0.0, False, 100.0, True),
    "trailing_stop_percentage": (0.0, False, 100.0, True),
}

EMERGENCY_STOP_WINDOW = timedelta(hours=24)


def _parse_time(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            logger.warning("Unparseable protection timestamp %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class PortfolioProtection:
    user_id: str
    account_id: str
    cash_reserve_percentage: float = 25.0
    max_daily_loss_percentage: float = 5.0
    max_single_trade_percentage: float = 10.0
    max_portfolio_exposure_percentage: float = 75.0
    max_position_concentration_percentage: float = 20.0
    max_daily_trades: int = 50
    trailing_stop_percentage: float = 2.0
    active: bool = True
    emergency_stop_triggered_at: Optional[str] = None
    emergency_stop_reason: Optional[str] = None
    emergency_stop_triggered_by: Optional[str] = None
    emergency_stop_cleared_at: Optional[str] = None
    emergency_stop_cleared_by: Optional[str] = None
    email_alerts_enabled: bool = True
    sms_alerts_enabled: bool = False
    alert_phone_number: Optional[str] = None
    updated_at: Optional[str] = None

    def __setattr__(self, name, value):
        if name in _RANGES:
            value = _check_range(name, value)
        elif name == "max_daily_trades":
            if isinstance(value, bool) or int(value) != value or int(value) < 1:
                raise ProtectionRangeError(f"max_daily_trades must be an integer >= 1 (got {value!r})")
            value = int(value)
        super().__setattr__(name, value)

    # ── Persistence ────────────────────────────────────────────────

    @classmethod
    def for_user_account(cls, store, user_id: str, account_id: str) -> "PortfolioProtection":
        """Load the account's settings, creating them with defaults on first use."""
        raw = store.get(user_id, account_id)
        if raw:
            known = {f.name for f in fields(cls)}
            return cls(**{k: v for k, v in raw.items() if k in known})
        protection = cls(user_id=user_id, account_id=account_id)
        protection.save(store)
        logger.info("Created default portfolio protection for account %s", account_id)
        return protection

    def save(self, store) -> None:
        self.updated_at = datetime.now(timezone.utc).isoformat()
        store.put(self.user_id, self.account_id, self.to_dict())

    def to_dict(self) -> dict:
        return asdict(self)

    # ── Emergency stop ─────────────────────────────────────────────

    def emergency_stop_active(
        self,
        now: Optional[datetime] = None,
        window: timedelta = EMERGENCY_STOP_WINDOW,
    ) -> bool:
        triggered = _parse_time(self.emergency_stop_triggered_at)
        if triggered is None:
            return False
        now = now or datetime.now(timezone.utc)
        return triggered > now - window

    def activate_emergency_stop(self, reason: str, triggered_by: str = "system") -> None:
        self.emergency_stop_triggered_at = datetime.now(timezone.utc).isoformat()
        self.emergency_stop_reason = reason
        self.emergency_stop_triggered_by = triggered_by
        self.active = False
        logger.critical(
            "EMERGENCY STOP ACTIVATED - User: %s, Account: %s, Reason: %s",
            self.user_id,
            self.account_id,
            reason,
        )

    def clear_emergency_stop(self, cleared_by: str) -> None:
        self.emergency_stop_triggered_at = None
        self.emergency_stop_reason = None
        self.emergency_stop_triggered_by = None
        self.emergency_stop_cleared_by = cleared_by
        self.emergency_stop_cleared_at = datetime.now(timezone.utc).isoformat()
        self.active = True
        logger.info(
            "EMERGENCY STOP CLEARED - User: %s, Account: %s, Cleared by: %s",
            self.user_id,
            self.account_id,
            cleared_by,
        )

    # ── Limits ─────────────────────────────────────────────────────

    def available_buying_power(self, total_buying_power: float) -> float:
        if total_buying_power <= 0:
            return 0.0
        return max(total_buying_power * (100 - self.cash_reserve_percentage) / 100.0, 0.0)

    def max_trade_size(self, portfolio_value: float) -> float:
        if portfolio_value <= 0:
            return 0.0
        return portfolio_value * self.max_single_trade_percentage / 100.0

    def daily_loss_limit_breached(self, daily_pnl: float, portfolio_value: float) -> bool:
        if daily_pnl >= 0 or portfolio_value <= 0:
            return False
        return abs(daily_pnl) / portfolio_value * 100 >= self.max_daily_loss_percentage

    def risk_status_report(self, account_data: Optional[dict]) -> dict:
        return {
            "account_id": self.account_id,
            "active": self.active,
            "emergency_stop_active": self.emergency_stop_active(),
            "settings": {
                "cash_reserve_percentage": self.cash_reserve_percentage,
                "max_daily_loss_percentage": self.max_daily_loss_percentage,
                "max_single_trade_percentage": self.max_single_trade_percentage,
                "max_portfolio_exposure_percentage": self.max_portfolio_exposure_percentage,
                "max_position_concentration_percentage": self.max_position_concentration_percentage,
                "max_daily_trades": self.max_daily_trades,
            },
            "current_status": self._current_status(account_data),
            "violations": self._current_violations(account_data),
            "last_updated": self.updated_at,
        }

    def _current_status(self, account_data: Optional[dict]) -> dict:
        if not account_data:
            return {}

        buying_power = safe_float(account_data.get("buying_power"))
        portfolio_value = safe_float(account_data.get("total_portfolio_value"))
        daily_pnl = safe_float(account_data.get("daily_pnl"))
        cash_balance = safe_float(account_data.get("cash_balance"))

        exposure = portfolio_value - cash_balance
        exposure_pct = exposure / portfolio_value * 100 if portfolio_value > 0 else 0.0
        pnl_pct = daily_pnl / portfolio_value * 100 if portfolio_value > 0 else 0.0
        reserve_pct = cash_balance / buying_power * 100 if buying_power > 0 else 0.0

        return {
            "available_for_trading": self.available_buying_power(buying_power),
            "current_exposure_percentage": round(exposure_pct, 2),
            "daily_pnl_percentage": round(pnl_pct, 2),
            "cash_reserve_percentage_actual": round(reserve_pct, 2),
            "max_single_trade_amount": round(self.max_trade_size(portfolio_value), 2),
        }

    def _current_violations(self, account_data: Optional[dict]) -> list[str]:
        status = self._current_status(account_data)
        if not status:
            return []

        violations = []
        if status["cash_reserve_percentage_actual"] < self.cash_reserve_percentage:
            violations.append(
                f"Cash reserve below required {self.cash_reserve_percentage}% "
                f"(current: {status['cash_reserve_percentage_actual']}%)"
            )
        if status["current_exposure_percentage"] > self.max_portfolio_exposure_percentage:
            violations.append(
                f"Portfolio exposure exceeds maximum {self.max_portfolio_exposure_percentage}% "
                f"(current: {status['current_exposure_percentage']}%)"
            )
        if status["daily_pnl_percentage"] <= -self.max_daily_loss_percentage:
            violations.append(
                f"Daily loss exceeds maximum {self.max_daily_loss_percentage}% "
                f"(current: {status['daily_pnl_percentage']}%)"
            )
        return violations


def _check_range(name: str, value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ProtectionRangeError(f"{name} must be a number (got {value!r})") from None

    lower, lower_inclusive, upper, upper_inclusive = _RANGES[name]
    too_low = number < lower if lower_inclusive else number <= lower
    too_high = number > upper if upper_inclusive else number >= upper
    if too_low or too_high:
        left = "[" if lower_inclusive else "("
        right = "]" if upper_inclusive else ")"
        raise ProtectionRangeError(
            f"{name} must be within {left}{lower:g}, {upper:g}{right} (got {value!r})"
        )
    return number
