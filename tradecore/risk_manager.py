"""Pre-trade risk gate, portfolio status and emergency stop control."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import numpy as np

from tradecore.config import RiskConfig
from tradecore.emergency_stop import EmergencyStopRegistry
from tradecore.errors import BrokerError, TradeCoreError
from tradecore.models import is_option_symbol
from tradecore.number_utils import money, optional_float, safe_float, safe_int
from tradecore.protection import PortfolioProtection

logger = logging.getLogger(__name__)

EMERGENCY_STOP_VIOLATION = "Trading halted due to emergency stop - manual intervention required"
SYSTEM_ERROR_VIOLATION = "Risk management system error - trade blocked for safety"


@dataclass
class RiskResult:
    allowed: bool = False
    violations: list[str] = field(default_factory=list)
    account_data: dict = field(default_factory=dict)
    calculations: dict = field(default_factory=dict)
    error_kind: Optional[str] = None
    retryable: bool = False


@dataclass
class EffectiveLimits:
    """Thresholds in force for one evaluation, all percentages of NAV or buying power."""

    cash_reserve_pct: float
    single_trade_pct: float
    daily_loss_pct: float
    exposure_pct: float
    concentration_pct: float
    max_positions: int
    drawdown_pct: float
    var_pct: float

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class RiskManager:
    """Decides whether an order may be placed on one brokerage account."""

    def __init__(
        self,
        user_id: str,
        account_id: str,
        broker,
        config: RiskConfig,
        stops: EmergencyStopRegistry,
        protection_store=None,
        alerts=None,
    ):
        self.user_id = user_id
        self.account_id = account_id
        self.broker = broker
        self.config = config
        self.stops = stops
        self.protection_store = protection_store
        self.alerts = alerts

    def account_lock(self):
        """Context manager serialising validate-then-place for this account."""
        return self.stops.account_lock(self.account_id)

    # ── Settings ───────────────────────────────────────────────────

    def protection(self) -> Optional[PortfolioProtection]:
        if self.protection_store is None:
            return None
        try:
            return PortfolioProtection.for_user_account(
                self.protection_store, self.user_id, self.account_id
            )
        except (TradeCoreError, ValueError, TypeError) as exc:
            logger.error(
                "Unreadable portfolio protection for account %s, using configured limits: %s",
                self.account_id,
                exc,
            )
            return None

    def effective_limits(self, protection: Optional[PortfolioProtection] = None) -> EffectiveLimits:
        """Combine configured limits with account settings, keeping the stricter of each."""
        cfg = self.config
        limits = EffectiveLimits(
            cash_reserve_pct=cfg.min_cash_reserve_pct,
            single_trade_pct=cfg.max_single_trade_pct,
            daily_loss_pct=cfg.max_daily_loss_pct,
            exposure_pct=cfg.max_total_exposure_pct,
            concentration_pct=cfg.max_symbol_concentration_pct,
            max_positions=cfg.max_concurrent_positions,
            drawdown_pct=cfg.max_drawdown_pct,
            var_pct=cfg.var_daily_limit_pct,
        )
        if protection is not None:
            limits.cash_reserve_pct = max(limits.cash_reserve_pct, protection.cash_reserve_percentage)
            limits.single_trade_pct = min(limits.single_trade_pct, protection.max_single_trade_percentage)
            limits.daily_loss_pct = min(limits.daily_loss_pct, protection.max_daily_loss_percentage)
            limits.exposure_pct = min(limits.exposure_pct, protection.max_portfolio_exposure_percentage)
            limits.concentration_pct = min(
                limits.concentration_pct, protection.max_position_concentration_percentage
            )
        return limits

    # ── Trade validation ───────────────────────────────────────────

    def validate_trade(self, order_params: dict) -> RiskResult:
        """Run every risk check against ``order_params`` and collect violations."""
        result = RiskResult()
        protection = self.protection()

        if self.stops.is_active(self.account_id, protection):
            result.violations.append(EMERGENCY_STOP_VIOLATION)
            return result

        try:
            limits = self.effective_limits(protection)
            account = self.account_snapshot()
            result.account_data = account
            trade_cost = self._trade_cost(order_params)
            if not math.isfinite(trade_cost):
                raise ValueError(f"Non-finite trade cost: {trade_cost!r}")

            bp = account["buying_power"]
            result.calculations = {
                "trade_cost": trade_cost,
                "current_buying_power": bp,
                "cash_reserve_required": bp * limits.cash_reserve_pct / 100.0,
                "available_for_trading": max(bp * (100.0 - limits.cash_reserve_pct) / 100.0, 0.0),
                "limits": limits.to_dict(),
            }

            self._check_cash_reserve(result, limits, trade_cost)
            self._check_single_trade(result, limits, trade_cost)
            self._check_daily_loss(result, limits)
            self._check_concentration(result, limits, order_params, trade_cost)
            self._check_exposure(result, limits, trade_cost)
            self._check_concurrent_positions(result, limits)
            self._check_drawdown(result, limits)
            self._check_var(result, limits, trade_cost)
            self._check_account_restrictions(result)

            result.allowed = not result.violations
        except BrokerError as exc:
            logger.error("Risk evaluation for account %s failed (%s): %s", self.account_id, exc.kind, exc)
            result.violations.append(SYSTEM_ERROR_VIOLATION)
            result.allowed = False
            result.error_kind = exc.kind
            result.retryable = exc.retryable
        except Exception as exc:
            logger.exception("Risk evaluation for account %s failed: %s", self.account_id, exc)
            result.violations.append(SYSTEM_ERROR_VIOLATION)
            result.allowed = False

        return result

    def check_trade(self, order_params: dict) -> RiskResult:
        """``validate_trade`` plus one audit log line for the decision."""
        result = self.validate_trade(order_params)
        self._log_risk_decision(order_params, result)
        return result

    def can_place_trade(self, order_params: dict) -> bool:
        return self.check_trade(order_params).allowed

    # ── Account data ───────────────────────────────────────────────

    def account_snapshot(self) -> dict:
        balances = self.broker.get_balances(self.account_id) or {}
        positions = self.broker.get_positions(self.account_id) or []

        cash_balance = _finite(balances, "cash-balance")
        position_value = sum(_finite(p, "market-value") for p in positions)

        return {
            "buying_power": _finite(balances, "buying-power"),
            "cash_balance": cash_balance,
            "day_trading_buying_power": _finite(balances, "day-trading-buying-power"),
            "maintenance_requirement": _finite(balances, "maintenance-requirement"),
            "total_portfolio_value": cash_balance + position_value,
            "daily_pnl": _finite(balances, "daily-pnl"),
            "positions": positions,
        }

    def portfolio_status(self) -> dict:
        protection = self.protection()
        limits = self.effective_limits(protection)
        account = self.account_snapshot()

        nav = account["total_portfolio_value"]
        bp = account["buying_power"]
        exposure = nav - account["cash_balance"]
        exposure_pct = exposure * 100.0 / nav if nav > 0 else 0.0
        pnl_pct = account["daily_pnl"] * 100.0 / nav if nav > 0 else 0.0
        risk_status = _risk_status(pnl_pct, exposure_pct)
        if risk_status == "high_risk" and self.alerts is not None:
            self.alerts.risk_warning(
                f"Account {self.account_id} at high risk: daily P&L {pnl_pct:.2f}%, "
                f"exposure {exposure_pct:.2f}%",
                context={"user_id": self.user_id, "account_id": self.account_id},
            )

        return {
            "account_id": self.account_id,
            "buying_power": bp,
            "cash_reserve_required": bp * limits.cash_reserve_pct / 100.0,
            "available_for_trading": max(bp * (100.0 - limits.cash_reserve_pct) / 100.0, 0.0),
            "current_exposure": exposure,
            "exposure_percentage": round(exposure_pct, 2),
            "daily_pnl": account["daily_pnl"],
            "daily_pnl_percentage": round(pnl_pct, 2),
            "risk_status": risk_status,
            "emergency_stop_active": self.stops.is_active(self.account_id, protection),
            "limits": limits.to_dict(),
        }

    # ── Emergency stop ─────────────────────────────────────────────

    def emergency_stop(self, reason: str, triggered_by: str = "risk_management_system") -> None:
        """Halt all opening trades on the account until a confirmed manual clear."""
        with self.account_lock():
            self.stops.trigger(self.account_id, reason, triggered_by)
            protection = self.protection()
            if protection is not None:
                protection.activate_emergency_stop(reason, triggered_by)
                protection.save(self.protection_store)

        self._cancel_working_orders()
        logger.critical(
            "EMERGENCY TRADING HALT: %s - User: %s, Account: %s",
            reason,
            self.user_id,
            self.account_id,
        )
        if self.alerts is not None:
            self.alerts.emergency_stop(
                reason,
                context={
                    "user_id": self.user_id,
                    "account_id": self.account_id,
                    "triggered_by": triggered_by,
                },
            )

    def emergency_stop_active(self) -> bool:
        return self.stops.is_active(self.account_id, self.protection())

    def clear_emergency_stop(self, authorized_by: str, confirm: bool = False) -> None:
        with self.account_lock():
            self.stops.clear(self.account_id, authorized_by, confirm)
            protection = self.protection()
            if protection is not None:
                protection.clear_emergency_stop(authorized_by)
                protection.save(self.protection_store)

    def _cancel_working_orders(self) -> None:
        try:
            orders = self.broker.get_orders(self.account_id, {"status": "working"})
        except BrokerError as exc:
            logger.error("Failed to list orders during emergency stop: %s", exc)
            return

        for order in orders:
            order_id = order.get("id")
            if order_id in (None, ""):
                continue
            try:
                self.broker.cancel_order(self.account_id, str(order_id))
                logger.info("Cancelled order %s due to emergency stop", order_id)
            except BrokerError as exc:
                logger.error("Failed to cancel order %s during emergency stop: %s", order_id, exc)

    # ── Individual checks ──────────────────────────────────────────

    def _trade_cost(self, order_params: dict) -> float:
        explicit = optional_float(order_params.get("trade_cost"))
        if explicit is not None:
            return explicit

        quantity = safe_int(order_params.get("quantity"))
        price = optional_float(order_params.get("price"))
        if str(order_params.get("order_type", "")).lower() != "market":
            return quantity * (price or 0.0)

        symbol = str(order_params.get("symbol", ""))
        action = str(order_params.get("action", "")).lower()
        try:
            quote = self.broker.get_quote(symbol) or {}
        except BrokerError as exc:
            logger.warning("Quote for %s unavailable, estimating market order cost: %s", symbol, exc)
            if price is not None:
                return quantity * price
            return self.config.fallback_trade_cost

        side = "ask" if "buy" in action else "bid"
        return quantity * safe_float(quote.get(side))

    def _check_cash_reserve(self, result: RiskResult, limits: EffectiveLimits, trade_cost: float) -> None:
        bp = result.account_data["buying_power"]
        required_reserve = bp * limits.cash_reserve_pct / 100.0
        available_after_trade = bp - trade_cost
        if available_after_trade < required_reserve:
            result.violations.append(
                f"Trade would violate cash reserve requirement "
                f"(must keep {limits.cash_reserve_pct:g}% reserve)"
            )
            result.violations.append(
                f"Required reserve: {money(required_reserve)}, "
                f"Available after trade: {money(available_after_trade)}"
            )

    def _check_single_trade(self, result: RiskResult, limits: EffectiveLimits, trade_cost: float) -> None:
        nav = result.account_data["total_portfolio_value"]
        max_trade = nav * limits.single_trade_pct / 100.0
        if trade_cost > max_trade:
            result.violations.append(
                f"Trade size exceeds maximum single trade limit "
                f"({limits.single_trade_pct:g}% of portfolio)"
            )
            result.violations.append(
                f"Max allowed: {money(max_trade)}, Requested: {money(trade_cost)}"
            )

    def _check_daily_loss(self, result: RiskResult, limits: EffectiveLimits) -> None:
        pnl = result.account_data["daily_pnl"]
        nav = result.account_data["total_portfolio_value"]
        if pnl >= 0 or nav <= 0:
            return

        loss_pct = abs(pnl) * 100.0 / nav
        if loss_pct >= limits.daily_loss_pct:
            result.violations.append(f"Daily loss limit exceeded ({limits.daily_loss_pct:g}%)")
            result.violations.append(f"Current daily loss: {loss_pct:.2f}%")
            self.emergency_stop(f"Daily loss limit exceeded: {loss_pct:.2f}%")

    def _check_concentration(
        self,
        result: RiskResult,
        limits: EffectiveLimits,
        order_params: dict,
        trade_cost: float,
    ) -> None:
        symbol = str(order_params.get("symbol", "")).strip().upper()
        if not symbol:
            return
        held = sum(
            abs(safe_float(p.get("market-value")))
            for p in result.account_data["positions"]
            if symbol in (str(p.get("symbol", "")).strip().upper(),
                          str(p.get("underlying-symbol", "")).strip().upper())
        )
        max_symbol_value = result.account_data["total_portfolio_value"] * limits.concentration_pct / 100.0
        if held + trade_cost > max_symbol_value:
            result.violations.append(
                f"Trade would create over-concentration in {symbol} "
                f"(max {limits.concentration_pct:g}% per symbol)"
            )

    def _check_exposure(self, result: RiskResult, limits: EffectiveLimits, trade_cost: float) -> None:
        nav = result.account_data["total_portfolio_value"]
        current_exposure = nav - result.account_data["cash_balance"]
        max_exposure = nav * limits.exposure_pct / 100.0
        if current_exposure + trade_cost > max_exposure:
            result.violations.append(
                f"Trade would exceed maximum portfolio exposure ({limits.exposure_pct:g}%)"
            )

    def _check_concurrent_positions(self, result: RiskResult, limits: EffectiveLimits) -> None:
        active = sum(
            1 for p in result.account_data["positions"]
            if abs(safe_float(p.get("market-value"))) > 0
        )
        if active >= limits.max_positions:
            result.violations.append(
                f"Maximum concurrent positions limit reached ({limits.max_positions})"
            )
            result.violations.append(f"Current positions: {active}")

    def _check_drawdown(self, result: RiskResult, limits: EffectiveLimits) -> None:
        # Daily P&L stands in for drawdown until a high-water mark is tracked.
        nav = result.account_data["total_portfolio_value"]
        if nav <= 0:
            return
        pnl_pct = result.account_data["daily_pnl"] * 100.0 / nav
        if pnl_pct <= -limits.drawdown_pct:
            result.violations.append(f"Maximum drawdown limit exceeded ({limits.drawdown_pct:g}%)")
            result.violations.append(f"Current drawdown: {pnl_pct:.2f}%")
            self.emergency_stop(f"Maximum drawdown exceeded: {pnl_pct:.2f}%")

    def _check_var(self, result: RiskResult, limits: EffectiveLimits, trade_cost: float) -> None:
        nav = result.account_data["total_portfolio_value"]
        var_limit = nav * limits.var_pct / 100.0
        total_risk = self.portfolio_risk(result.account_data["positions"]) + (
            trade_cost * self.config.trade_var_fraction
        )
        result.calculations["estimated_daily_risk"] = total_risk
        if total_risk > var_limit:
            result.violations.append(
                f"Trade would exceed 1-day VaR limit ({limits.var_pct:g}% of NAV)"
            )
            result.violations.append(
                f"VaR limit: {money(var_limit)}, Estimated risk: {money(total_risk)}"
            )

    def _check_account_restrictions(self, result: RiskResult) -> None:
        account = result.account_data
        if (
            account["buying_power"] < self.config.pdt_equity_threshold
            and account["day_trading_buying_power"] <= 0
        ):
            result.violations.append(
                "Pattern Day Trader restriction - insufficient day trading buying power"
            )
        if account["maintenance_requirement"] > account["cash_balance"] * self.config.maintenance_warning_ratio:
            result.violations.append("Account approaching maintenance requirement limit")

    def portfolio_risk(self, positions: list[dict]) -> float:
        """Estimated one-day loss: a flat share of each position's absolute value."""
        if not positions:
            return 0.0
        values = np.abs(np.array([safe_float(p.get("market-value")) for p in positions], dtype=float))
        weights = np.array(
            [
                self.config.option_risk_weight if _is_option_position(p) else self.config.equity_risk_weight
                for p in positions
            ],
            dtype=float,
        )
        return float(np.dot(values, weights))

    def _log_risk_decision(self, order_params: dict, result: RiskResult) -> None:
        log_data = {
            "user_id": self.user_id,
            "account_id": self.account_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "order_params": order_params,
            "decision": "APPROVED" if result.allowed else "REJECTED",
            "violations": result.violations,
            "error_kind": result.error_kind,
            "account_snapshot": result.account_data,
            "calculations": result.calculations,
        }
        logger.info("RISK_DECISION: %s", json.dumps(log_data, default=str))


def _finite(payload: dict, key: str) -> float:
    """Balance field as a float; a NaN or infinite value from the broker is an error."""
    value = safe_float(payload.get(key))
    if not math.isfinite(value):
        raise ValueError(f"Non-finite {key} from broker: {payload.get(key)!r}")
    return value


def _is_option_position(position: dict) -> bool:
    if "option" in str(position.get("instrument-type", "")).lower():
        return True
    return is_option_symbol(re.sub(r"\s+", "", str(position.get("symbol", ""))))


def _risk_status(daily_pnl_pct: float, exposure_pct: float) -> str:
    if daily_pnl_pct <= -2.5 or exposure_pct >= 90.0:
        return "high_risk"
    if daily_pnl_pct <= -1.5 or exposure_pct >= 80.0:
        return "medium_risk"
    return "low_risk"
