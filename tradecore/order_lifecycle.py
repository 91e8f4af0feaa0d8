"""Order state machine and the order-entry manager that drives it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from tradecore.errors import BrokerError, InvalidTransition
from tradecore.models import Order, OrderStatus, utc_now_iso
from tradecore.number_utils import optional_float, safe_int
from tradecore.storage import DuplicateBrokerOrderId

logger = logging.getLogger(__name__)

# event -> (allowed source states, target state)
TRANSITIONS: dict[str, tuple[frozenset, str]] = {
    "submit": (frozenset({OrderStatus.PENDING}), OrderStatus.SUBMITTED),
    "accept": (frozenset({OrderStatus.SUBMITTED}), OrderStatus.WORKING),
    "partial_fill": (frozenset({OrderStatus.WORKING}), OrderStatus.PARTIALLY_FILLED),
    "fill": (
        frozenset({OrderStatus.WORKING, OrderStatus.PARTIALLY_FILLED}),
        OrderStatus.FILLED,
    ),
    "cancel": (
        frozenset({
            OrderStatus.PENDING,
            OrderStatus.SUBMITTED,
            OrderStatus.WORKING,
            OrderStatus.PARTIALLY_FILLED,
        }),
        OrderStatus.CANCELLED,
    ),
    "reject": (
        frozenset({OrderStatus.PENDING, OrderStatus.SUBMITTED}),
        OrderStatus.REJECTED,
    ),
    "expire": (
        frozenset({OrderStatus.WORKING, OrderStatus.PARTIALLY_FILLED}),
        OrderStatus.EXPIRED,
    ),
}

_TIMESTAMP_FIELDS = {
    "submit": "submitted_at",
    "fill": "filled_at",
    "cancel": "cancelled_at",
}

BROKER_STATUS_EVENTS = {
    "received": "submit",
    "routed": "submit",
    "in flight": "submit",
    "contingent": "submit",
    "live": "accept",
    "working": "accept",
    "partially filled": "partial_fill",
    "partially_filled": "partial_fill",
    "filled": "fill",
    "cancelled": "cancel",
    "canceled": "cancel",
    "rejected": "reject",
    "expired": "expire",
}

MODIFIABLE_FIELDS = ("price", "quantity", "time_in_force")


def may(order: Order, event: str) -> bool:
    """Return whether ``event`` is legal from the order's current status."""
    rule = TRANSITIONS.get(event)
    return bool(rule) and order.status in rule[0]


def transition(order: Order, event: str) -> Order:
    """Apply ``event`` to ``order`` in place, or raise ``InvalidTransition``."""
    if not may(order, event):
        raise InvalidTransition(event, order.status)
    _, target = TRANSITIONS[event]
    now = utc_now_iso()
    order.status = target
    stamp_field = _TIMESTAMP_FIELDS.get(event)
    if stamp_field:
        setattr(order, stamp_field, now)
    order.updated_at = now
    logger.debug("Order %s -> %s via %s", order.order_id, target, event)
    return order


@dataclass
class OrderResult:
    success: bool
    order: Optional[Order] = None
    errors: list[str] = field(default_factory=list)
    error_kind: Optional[str] = None
    retryable: bool = False


class OrderManager:
    """Validate, risk-gate, submit and track orders for one account."""

    def __init__(self, broker, order_store, risk_manager):
        self.broker = broker
        self.store = order_store
        self.risk_manager = risk_manager

    @property
    def account_id(self) -> str:
        return self.risk_manager.account_id

    def build_order(self, params: dict) -> Order:
        order = Order(
            user_id=self.risk_manager.user_id,
            account_id=self.account_id,
            symbol=params.get("symbol", ""),
            quantity=safe_int(params.get("quantity"), 0),
            action=params.get("action", ""),
            order_type=params.get("order_type", "limit"),
            price=optional_float(params.get("price")),
            stop_price=optional_float(params.get("stop_price")),
            time_in_force=params.get("time_in_force", "day"),
            strategy=str(params.get("strategy", "") or ""),
            expiration=str(params.get("expiration", "") or ""),
        )
        for leg in params.get("legs") or []:
            order.add_leg(
                symbol=leg.get("symbol", ""),
                quantity=safe_int(leg.get("quantity"), 0),
                action=leg.get("action", ""),
                price=optional_float(leg.get("price")),
            )
        return order

    def place_order(self, params: dict) -> OrderResult:
        """Validate, risk-check and submit a new order."""
        order = self.build_order(params)
        errors = order.validate()
        if errors:
            return OrderResult(False, order, errors, "validation_failed")

        with self.risk_manager.account_lock():
            if order.is_opening:
                risk = self.risk_manager.check_trade(_risk_params(order, params))
                if not risk.allowed:
                    logger.warning(
                        "Order for %s blocked by risk checks: %s",
                        order.symbol,
                        "; ".join(risk.violations),
                    )
                    return OrderResult(
                        False,
                        order,
                        [f"Risk Management: {v}" for v in risk.violations],
                        risk.error_kind or "risk_rejected",
                        risk.retryable,
                    )

            self.store.save(order)
            try:
                response = self.broker.place_order(
                    self.account_id, self.broker.build_order_body(wire_params(order))
                )
            except BrokerError as exc:
                logger.error("Broker rejected order %s: %s", order.order_id, exc)
                transition(order, "reject")
                self.store.save(order)
                return OrderResult(False, order, [str(exc)], exc.kind, exc.retryable)

            order.broker_order_id = _broker_id(response)
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
                return OrderResult(False, order, [str(exc)], "persistence_failed")

        logger.info(
            "Order %s submitted: %s %s x%d (broker id %s)",
            order.order_id,
            order.action,
            order.symbol,
            order.quantity,
            order.broker_order_id,
        )
        return OrderResult(True, order)

    def cancel_order(self, order_id: str) -> OrderResult:
        order = self.store.get(order_id)
        if order is None:
            return OrderResult(False, None, [f"Order {order_id} not found"], "not_found")
        if not may(order, "cancel"):
            return OrderResult(
                False,
                order,
                [f"Order cannot be cancelled in status '{order.status}'"],
                "invalid_transition",
            )

        if order.broker_order_id:
            try:
                self.broker.cancel_order(order.account_id, order.broker_order_id)
            except BrokerError as exc:
                logger.error("Failed to cancel order %s: %s", order_id, exc)
                return OrderResult(False, order, [str(exc)], exc.kind)

        transition(order, "cancel")
        self.store.save(order)
        logger.info("Order %s cancelled", order_id)
        return OrderResult(True, order)

    def modify_order(self, order_id: str, modifications: dict) -> OrderResult:
        """Change price, quantity or time in force of an active order."""
        order = self.store.get(order_id)
        if order is None:
            return OrderResult(False, None, [f"Order {order_id} not found"], "not_found")
        if not order.is_active:
            return OrderResult(
                False,
                order,
                [f"Order cannot be modified in status '{order.status}'"],
                "invalid_transition",
            )

        unknown = sorted(set(modifications) - set(MODIFIABLE_FIELDS))
        if unknown:
            return OrderResult(
                False, order, [f"Cannot modify field(s): {', '.join(unknown)}"], "validation_failed"
            )

        if "price" in modifications:
            order.price = optional_float(modifications["price"])
        if "quantity" in modifications:
            order.quantity = safe_int(modifications["quantity"], 0)
        if "time_in_force" in modifications:
            order.time_in_force = str(modifications["time_in_force"]).strip().lower()

        errors = order.validate()
        if errors:
            return OrderResult(False, self.store.get(order_id), errors, "validation_failed")

        with self.risk_manager.account_lock():
            if order.is_opening:
                risk = self.risk_manager.check_trade(_risk_params(order, modifications))
                if not risk.allowed:
                    logger.warning(
                        "Modification of order %s blocked by risk checks: %s",
                        order_id,
                        "; ".join(risk.violations),
                    )
                    return OrderResult(
                        False,
                        self.store.get(order_id),
                        [f"Risk Management: {v}" for v in risk.violations],
                        risk.error_kind or "risk_rejected",
                        risk.retryable,
                    )

            if order.broker_order_id:
                body = self.broker.build_order_body(wire_params(order))
                try:
                    response = self.broker.replace_order(order.account_id, order.broker_order_id, body)
                except BrokerError as exc:
                    logger.error("Failed to modify order %s: %s", order_id, exc)
                    return OrderResult(
                        False, self.store.get(order_id), [str(exc)], exc.kind, exc.retryable
                    )
                order.broker_order_id = _broker_id(response) or order.broker_order_id

            self.store.save(order)
        return OrderResult(True, order)

    def apply_broker_status(self, order_id: str, broker_status: str) -> Optional[Order]:
        """Move an order along its lifecycle to match a broker-reported status.

        A fill reported while the order is still ``submitted`` is applied as an
        accept followed by the fill. Unknown statuses are logged and ignored.
        """
        order = self.store.get(order_id)
        if order is None:
            logger.warning("Status update for unknown order %s", order_id)
            return None

        event = BROKER_STATUS_EVENTS.get(str(broker_status or "").strip().lower())
        if event is None:
            logger.info("Ignoring broker status %r for order %s", broker_status, order_id)
            return order

        target = TRANSITIONS[event][1]
        if order.status == target:
            return order

        if event in ("fill", "partial_fill", "expire") and order.status == OrderStatus.SUBMITTED:
            transition(order, "accept")
        transition(order, event)
        self.store.save(order)
        return order


def _risk_params(order: Order, params: dict) -> dict:
    risk_params = {
        "symbol": order.symbol,
        "quantity": order.quantity,
        "order_type": order.order_type,
        "action": order.action,
        "price": order.price,
        "stop_price": order.stop_price,
    }
    if params.get("trade_cost") is not None:
        risk_params["trade_cost"] = params["trade_cost"]
    return risk_params


def _broker_id(response) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    value = response.get("id")
    return str(value) if value not in (None, "") else None


def wire_params(order: Order) -> dict:
    """Order fields in the shape ``BrokerClient.build_order_body`` expects."""
    return {
        "order_type": order.order_type,
        "symbol": order.symbol,
        "quantity": order.quantity,
        "action": order.action,
        "price": order.price,
        "stop_price": order.stop_price,
        "time_in_force": order.time_in_force,
        "legs": [
            {"symbol": leg.symbol, "quantity": leg.quantity, "action": leg.action, "price": leg.price}
            for leg in order.legs
        ],
    }
