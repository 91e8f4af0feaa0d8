"""Core records: orders, order legs, positions and scanner trade candidates."""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from tradecore.number_utils import optional_float, safe_float, safe_int

SYMBOL_PATTERN = re.compile(r"^[A-Z]+\d*[CP]?\d*$")
OPTION_PATTERN = re.compile(r"\d+([CP])\d+")

VALID_ORDER_TYPES = ("market", "limit", "stop", "stop_limit")
VALID_ACTIONS = ("buy-to-open", "buy-to-close", "sell-to-open", "sell-to-close")
VALID_TIME_IN_FORCE = ("day", "gtc", "ioc", "fok")

PUT_CREDIT_SPREAD = "Put Credit Spread"
CALL_CREDIT_SPREAD = "Call Credit Spread"
IRON_CONDOR = "Iron Condor"
SUPPORTED_STRATEGIES = (PUT_CREDIT_SPREAD, CALL_CREDIT_SPREAD, IRON_CONDOR)


class OrderStatus:
    PENDING = "pending"
    SUBMITTED = "submitted"
    WORKING = "working"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"

    ALL = (
        PENDING, SUBMITTED, WORKING, FILLED,
        PARTIALLY_FILLED, CANCELLED, REJECTED, EXPIRED,
    )
    ACTIVE = frozenset({PENDING, SUBMITTED, WORKING, PARTIALLY_FILLED})
    COMPLETED = frozenset({FILLED, CANCELLED, REJECTED, EXPIRED})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalize_symbol(symbol: Any) -> str:
    """Uppercase and strip a ticker or option symbol. Idempotent."""
    if symbol is None:
        return ""
    return str(symbol).strip().upper()


def is_option_symbol(symbol: str) -> bool:
    return bool(OPTION_PATTERN.search(symbol or ""))


def _option_right(symbol: str) -> Optional[str]:
    match = OPTION_PATTERN.search(symbol or "")
    return match.group(1) if match else None


# ── Orders ───────────────────────────────────────────────────────────


@dataclass
class OrderLeg:
    symbol: str
    quantity: int
    action: str
    price: Optional[float] = None
    leg_number: int = 0

    def __post_init__(self) -> None:
        self.symbol = normalize_symbol(self.symbol)

    @property
    def is_option(self) -> bool:
        return is_option_symbol(self.symbol)

    @property
    def is_call(self) -> bool:
        return _option_right(self.symbol) == "C"

    @property
    def is_put(self) -> bool:
        return _option_right(self.symbol) == "P"

    def validate(self) -> list[str]:
        errors: list[str] = []
        label = f"Leg {self.leg_number}"
        if not self.symbol:
            errors.append(f"{label}: symbol can't be blank")
        elif not SYMBOL_PATTERN.match(self.symbol):
            errors.append(f"{label}: symbol {self.symbol} is invalid")
        if safe_int(self.quantity) <= 0:
            errors.append(f"{label}: quantity must be greater than 0")
        if self.action not in VALID_ACTIONS:
            errors.append(f"{label}: action {self.action!r} is not valid")
        if self.price is not None and safe_float(self.price) <= 0:
            errors.append(f"{label}: price must be greater than 0")
        return errors

    @classmethod
    def from_dict(cls, data: dict) -> "OrderLeg":
        return cls(
            symbol=data.get("symbol", ""),
            quantity=safe_int(data.get("quantity"), 0),
            action=str(data.get("action", "")),
            price=optional_float(data.get("price")),
            leg_number=safe_int(data.get("leg_number"), 0),
        )


@dataclass
class Order:
    user_id: str
    account_id: str
    symbol: str
    quantity: int
    action: str
    order_type: str = "limit"
    price: Optional[float] = None
    stop_price: Optional[float] = None
    time_in_force: str = "day"
    status: str = OrderStatus.PENDING
    order_id: str = field(default_factory=lambda: f"ord_{uuid.uuid4().hex[:12]}")
    broker_order_id: Optional[str] = None
    strategy: str = ""
    legs: list[OrderLeg] = field(default_factory=list)
    expiration: str = ""

    # Scanner context captured at submission.
    expected_credit: Optional[float] = None
    max_loss: Optional[float] = None
    pop: Optional[float] = None
    model_score: Optional[float] = None
    momentum_z: Optional[float] = None
    flow_z: Optional[float] = None
    thesis: str = ""

    created_at: str = field(default_factory=utc_now_iso)
    submitted_at: Optional[str] = None
    filled_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    updated_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        self.symbol = normalize_symbol(self.symbol)
        self.order_type = str(self.order_type or "").strip().lower()
        self.time_in_force = str(self.time_in_force or "").strip().lower()
        self.action = str(self.action or "").strip().lower()

    def add_leg(
        self,
        symbol: str,
        quantity: int,
        action: str,
        price: Optional[float] = None,
    ) -> OrderLeg:
        """Append a leg, numbering it after the existing ones."""
        leg = OrderLeg(
            symbol=symbol,
            quantity=quantity,
            action=action,
            price=price,
            leg_number=len(self.legs) + 1,
        )
        self.legs.append(leg)
        return leg

    @property
    def is_market_order(self) -> bool:
        return self.order_type == "market"

    @property
    def is_limit_order(self) -> bool:
        return self.order_type == "limit"

    @property
    def is_stop_order(self) -> bool:
        return "stop" in self.order_type

    @property
    def is_multi_leg(self) -> bool:
        return bool(self.legs)

    @property
    def is_opening(self) -> bool:
        return self.action.endswith("-to-open")

    @property
    def is_closing(self) -> bool:
        return self.action.endswith("-to-close")

    @property
    def is_active(self) -> bool:
        return self.status in OrderStatus.ACTIVE

    @property
    def total_value(self) -> float:
        if self.price is not None:
            return self.price * self.quantity
        return sum((leg.price or 0.0) * leg.quantity for leg in self.legs)

    def validate(self) -> list[str]:
        """Return human-readable validation errors. Empty means valid."""
        errors: list[str] = []

        if not self.symbol:
            errors.append("Symbol can't be blank")
        elif not SYMBOL_PATTERN.match(self.symbol):
            errors.append(f"Symbol {self.symbol} is invalid")

        if safe_int(self.quantity) <= 0:
            errors.append("Quantity must be greater than 0")
        if self.order_type not in VALID_ORDER_TYPES:
            errors.append(f"Order type {self.order_type!r} is not valid")
        if self.action not in VALID_ACTIONS:
            errors.append(f"Action {self.action!r} is not valid")
        if self.time_in_force not in VALID_TIME_IN_FORCE:
            errors.append(f"Time in force {self.time_in_force!r} is not valid")

        if self.price is not None and safe_float(self.price) <= 0:
            errors.append("Price must be greater than 0")
        if self.stop_price is not None and safe_float(self.stop_price) <= 0:
            errors.append("Stop price must be greater than 0")
        if self.order_type == "limit" and self.price is None:
            errors.append("Price is required for limit orders")
        if self.order_type in ("stop", "stop_limit") and self.stop_price is None:
            errors.append("Stop price is required for stop orders")

        seen_numbers: set[int] = set()
        for leg in self.legs:
            errors.extend(leg.validate())
            if leg.leg_number in seen_numbers:
                errors.append(f"Leg number {leg.leg_number} is duplicated")
            seen_numbers.add(leg.leg_number)

        return errors

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        payload = dict(data)
        legs = [OrderLeg.from_dict(leg) for leg in payload.pop("legs", []) or []]
        known = {name for name in cls.__dataclass_fields__}
        order = cls(**{k: v for k, v in payload.items() if k in known})
        order.legs = legs
        return order


# ── Positions ────────────────────────────────────────────────────────


@dataclass
class Position:
    symbol: str
    quantity: float
    average_price: float
    account_id: str
    user_id: str
    current_price: Optional[float] = None
    instrument_type: str = ""
    last_updated_at: Optional[str] = None
    closed_at: Optional[str] = None

    def __post_init__(self) -> None:
        self.symbol = normalize_symbol(self.symbol)

    @property
    def is_long(self) -> bool:
        return self.quantity > 0

    @property
    def is_short(self) -> bool:
        return self.quantity < 0

    @property
    def is_open(self) -> bool:
        return self.quantity != 0 and self.closed_at is None

    @property
    def is_option(self) -> bool:
        if "option" in self.instrument_type.lower():
            return True
        return is_option_symbol(self.symbol)

    @property
    def is_stock(self) -> bool:
        return not self.is_option

    @property
    def market_value(self) -> Optional[float]:
        if self.current_price is None:
            return None
        return self.current_price * self.quantity

    @property
    def unrealized_pnl(self) -> Optional[float]:
        if self.current_price is None:
            return None
        return (self.current_price - self.average_price) * self.quantity

    @property
    def unrealized_pnl_percent(self) -> Optional[float]:
        pnl = self.unrealized_pnl
        basis = self.cost_basis
        if pnl is None or basis == 0:
            return None
        return pnl / basis * 100

    @property
    def cost_basis(self) -> float:
        return self.average_price * abs(self.quantity)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


# ── Scanner candidates ───────────────────────────────────────────────


@dataclass
class TradeCandidate:
    symbol: str
    strategy: str
    legs: str
    expiration: str
    credit: float
    max_loss: float
    risk_reward: float
    pop: float
    model_score: float
    momentum_z: float
    flow_z: float
    thesis: str
    current_price: Optional[float] = None
    iv_rank: Optional[float] = None
    delta: Optional[float] = None
    theta: Optional[float] = None
    vega: Optional[float] = None
    days_to_expiration: Optional[int] = None

    @property
    def strikes(self) -> list[float]:
        """Strike prices parsed from the ``legs`` string, e.g. ``"575/570"``."""
        strikes = []
        for part in str(self.legs).split("/"):
            value = optional_float(part.strip())
            if value is not None:
                strikes.append(value)
        return strikes

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TradeCandidate":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})
