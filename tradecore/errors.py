"""Exception hierarchy for broker transport failures and core domain errors."""

from __future__ import annotations

from typing import Optional


class TradeCoreError(Exception):
    """Base class for every error raised by the trading core."""


# ── Broker transport errors ──────────────────────────────────────────


class BrokerError(TradeCoreError):
    """A broker API call failed.

    Carries the failing operation and account so callers can decide whether to
    retry. The auth token is never part of the message.
    """

    kind = "api_error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        account_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.operation = operation
        self.account_id = account_id
        self.status_code = status_code
        super().__init__(self._format())

    def _format(self) -> str:
        parts = []
        if self.operation:
            parts.append(self.operation)
        if self.account_id:
            parts.append(f"account={self.account_id}")
        prefix = f"[{' '.join(parts)}] " if parts else ""
        return f"{prefix}{self.message}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "retryable": self.retryable,
            "message": self.message,
            "operation": self.operation,
            "account_id": self.account_id,
            "status_code": self.status_code,
        }


class ApiError(BrokerError):
    kind = "api_error"


class AuthExpired(BrokerError):
    kind = "auth_expired"


class RateLimited(BrokerError):
    kind = "rate_limited"
    retryable = True


class ValidationFailed(BrokerError):
    kind = "validation_failed"


class InsufficientFunds(BrokerError):
    kind = "insufficient_funds"


class MarketClosed(BrokerError):
    kind = "market_closed"


class NotFound(BrokerError):
    kind = "not_found"


class MaintenanceError(BrokerError):
    kind = "maintenance"
    retryable = True


class BrokerTimeout(BrokerError):
    """The broker did not answer in time; safe to retry."""

    kind = "timeout"
    retryable = True


# ── Domain errors ────────────────────────────────────────────────────


class InvalidTransition(TradeCoreError):
    """An order lifecycle event is not legal from the order's current state."""

    def __init__(self, event: str, from_status: str):
        self.event = event
        self.from_status = from_status
        super().__init__(f"Cannot {event} an order in status '{from_status}'")


class UnsupportedStrategy(TradeCoreError):
    kind = "unsupported_strategy"

    def __init__(self, strategy: str):
        self.strategy = strategy
        super().__init__(f"Strategy {strategy} not supported")


class ProtectionRangeError(TradeCoreError, ValueError):
    """A portfolio protection setting was assigned a value outside its range."""


class EmergencyStopClearRefused(TradeCoreError):
    """Clearing an emergency stop needs an explicit, attributed confirmation."""


class ScanAlreadyRunning(TradeCoreError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"A market scan is already running for user {user_id}")
