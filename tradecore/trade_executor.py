"""Turns a selected scanner candidate into a multi-leg broker order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Union

from tradecore.errors import BrokerError, UnsupportedStrategy
from tradecore.models import (
    CALL_CREDIT_SPREAD,
    IRON_CONDOR,
    PUT_CREDIT_SPREAD,
    SUPPORTED_STRATEGIES,
    Order,
    TradeCandidate,
)
from tradecore.order_lifecycle import transition, wire_params
from tradecore.storage import DuplicateBrokerOrderId

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    success: bool
    message: str
    order_id: Optional[str] = None
    broker_order_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    violations: list[str] = field(default_factory=list)


def build_option_symbol(underlying: str, expiration: str, strike: float, right: str) -> str:
    """OCC-style symbol, e.g. ``AAPL240315C00150000``."""
    exp = date.fromisoformat(str(expiration)[:10]).strftime("%y%m%d")
    return f"{underlying.upper()}{exp}{right}{int(round(strike * 1000)):08d}"


class TradeExecutor:
    """Risk-check, submit and record scanner candidates for one account."""

    def __init__(self, broker, risk_manager, order_store, account_id: str, user_id: str, alerts=None):
        self.broker = broker
        self.risk_manager = risk_manager
        self.store = order_store
        self.account_id = account_id
        self.user_id = user_id
        self.alerts = alerts

    def execute_trade(self, candidate: Union[TradeCandidate, dict]) -> ExecutionResult:
        if isinstance(candidate, dict):
            candidate = TradeCandidate.from_dict(candidate)
        label = f"{candidate.strategy} order for {candidate.symbol}"
        logger.info("Executing %s for %s", candidate.strategy, candidate.symbol)

        try:
            order = self.build_order(candidate)
        except UnsupportedStrategy as exc:
            logger.warning("Refusing candidate %s: %s", candidate.symbol, exc)
            return ExecutionResult(
                False,
                f"Failed to place {label}",
                error=str(exc),
                error_kind=exc.kind,
            )
        except ValueError as exc:
            return ExecutionResult(
                False,
                f"Failed to place {label}",
                error=f"Invalid candidate: {exc}",
                error_kind="validation_failed",
            )

        with self.risk_manager.account_lock():
            risk = self.risk_manager.check_trade({
                "symbol": candidate.symbol,
                "quantity": order.quantity,
                "order_type": order.order_type,
                "action": order.action,
                "price": order.price,
                "trade_cost": candidate.max_loss,
            })
            if not risk.allowed:
                logger.warning(
                    "Trade for %s rejected by risk management: %s",
                    candidate.symbol,
                    "; ".join(risk.violations),
                )
                return ExecutionResult(
                    False,
                    f"Failed to place {label}",
                    error="Trade rejected by risk management",
                    error_kind=risk.error_kind or "risk_rejected",
                    retryable=risk.retryable,
                    violations=list(risk.violations),
                )

            self.store.save(order)
            body = self.broker.build_order_body(wire_params(order))
            try:
                response = self.broker.place_order(self.account_id, body)
            except BrokerError as exc:
                logger.error("Failed to execute trade for %s: %s", candidate.symbol, exc)
                transition(order, "reject")
                self.store.save(order)
                return ExecutionResult(
                    False,
                    f"Failed to place {label}",
                    order_id=order.order_id,
                    error=str(exc),
                    error_kind=exc.kind,
                    retryable=exc.retryable,
                )

            broker_id = response.get("id") if isinstance(response, dict) else None
            order.broker_order_id = str(broker_id) if broker_id not in (None, "") else None
            transition(order, "submit")
            try:
                self.store.save(order)
            except DuplicateBrokerOrderId as exc:
                logger.critical(
                    "Order %s accepted by broker as %s but not recorded: %s",
                    order.order_id,
                    order.broker_order_id,
                    exc,
                )
                return ExecutionResult(
                    False,
                    f"{label} placed at broker but not recorded",
                    order_id=order.order_id,
                    broker_order_id=order.broker_order_id,
                    error=str(exc),
                    error_kind="persistence_failed",
                )

        logger.info("Order placed: %s for %s", order.order_id, candidate.symbol)
        if self.alerts is not None:
            self.alerts.trade_opened(
                f"{label} at {candidate.credit:.2f} credit",
                context={"order_id": order.order_id, "legs": candidate.legs,
                         "expiration": candidate.expiration},
            )
        return ExecutionResult(
            True,
            f"{label} placed",
            order_id=order.order_id,
            broker_order_id=order.broker_order_id,
        )

    def build_order(self, candidate: TradeCandidate) -> Order:
        """Pending limit order, one contract per leg, priced at the candidate credit."""
        if candidate.strategy not in SUPPORTED_STRATEGIES:
            raise UnsupportedStrategy(candidate.strategy)

        order = Order(
            user_id=self.user_id,
            account_id=self.account_id,
            symbol=candidate.symbol,
            quantity=1,
            action="sell-to-open",
            order_type="limit",
            price=candidate.credit,
            time_in_force="day",
            strategy=candidate.strategy,
            expiration=candidate.expiration,
            expected_credit=candidate.credit,
            max_loss=candidate.max_loss,
            pop=candidate.pop,
            model_score=candidate.model_score,
            momentum_z=candidate.momentum_z,
            flow_z=candidate.flow_z,
            thesis=candidate.thesis,
        )
        for strike, right, action in _leg_plan(candidate):
            order.add_leg(
                symbol=build_option_symbol(candidate.symbol, candidate.expiration, strike, right),
                quantity=1,
                action=action,
            )
        errors = order.validate()
        if errors:
            raise ValueError("; ".join(errors))
        return order


def _leg_plan(candidate: TradeCandidate) -> list[tuple[float, str, str]]:
    """(strike, right, action) per leg.

    Short and long strikes are told apart by value, so both ``575/570`` and
    ``570/575`` describe the same put spread.
    """
    strikes = candidate.strikes
    if candidate.strategy in (PUT_CREDIT_SPREAD, CALL_CREDIT_SPREAD):
        if len(strikes) != 2:
            raise ValueError(f"{candidate.strategy} needs 2 strikes, got {candidate.legs!r}")
        if candidate.strategy == PUT_CREDIT_SPREAD:
            short, long_ = max(strikes), min(strikes)
            right = "P"
        else:
            short, long_ = min(strikes), max(strikes)
            right = "C"
        return [(short, right, "sell-to-open"), (long_, right, "buy-to-open")]

    if candidate.strategy == IRON_CONDOR:
        if len(strikes) != 4:
            raise ValueError(f"{IRON_CONDOR} needs 4 strikes, got {candidate.legs!r}")
        put_strikes, call_strikes = strikes[:2], strikes[2:]
        return [
            (min(put_strikes), "P", "buy-to-open"),
            (max(put_strikes), "P", "sell-to-open"),
            (min(call_strikes), "C", "sell-to-open"),
            (max(call_strikes), "C", "buy-to-open"),
        ]

    raise UnsupportedStrategy(candidate.strategy)
