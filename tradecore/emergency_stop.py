"""Per-account emergency stop circuit breaker."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from tradecore.errors import EmergencyStopClearRefused

logger = logging.getLogger(__name__)


@dataclass
class EmergencyStopRecord:
    account_id: str
    reason: str
    triggered_by: str
    triggered_at: datetime

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "reason": self.reason,
            "triggered_by": self.triggered_by,
            "triggered_at": self.triggered_at.isoformat(),
        }


class _AccountState:
    def __init__(self):
        self.lock = threading.RLock()
        self.record: Optional[EmergencyStopRecord] = None


class EmergencyStopRegistry:
    """Emergency stop records and trading locks, one pair per account.

    The account lock is re-entrant so a risk check that triggers a stop can do
    so while the caller already holds the lock for validate-then-place.
    """

    def __init__(
        self,
        expiry_hours: float = 24.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not expiry_hours > 0:
            raise ValueError(f"Emergency stop expiry must be positive, got {expiry_hours!r}")
        self.window = timedelta(hours=expiry_hours)
        self._clock = clock
        self._states: dict[str, _AccountState] = {}
        self._states_lock = threading.Lock()

    def _state(self, account_id: str) -> _AccountState:
        with self._states_lock:
            state = self._states.get(account_id)
            if state is None:
                state = _AccountState()
                self._states[account_id] = state
            return state

    @contextmanager
    def account_lock(self, account_id: str) -> Iterator[None]:
        state = self._state(account_id)
        with state.lock:
            yield

    def trigger(self, account_id: str, reason: str, triggered_by: str) -> EmergencyStopRecord:
        state = self._state(account_id)
        with state.lock:
            state.record = EmergencyStopRecord(
                account_id=account_id,
                reason=reason,
                triggered_by=triggered_by,
                triggered_at=self._clock(),
            )
            logger.critical(
                "Emergency stop engaged for account %s by %s: %s",
                account_id,
                triggered_by,
                reason,
            )
            return state.record

    def record(self, account_id: str) -> Optional[EmergencyStopRecord]:
        state = self._state(account_id)
        with state.lock:
            return state.record

    def is_active(self, account_id: str, protection=None) -> bool:
        """True while a stop recorded here or on ``protection`` is inside the window."""
        state = self._state(account_id)
        with state.lock:
            record = state.record
            if record is not None and record.triggered_at > self._clock() - self.window:
                return True
        if protection is not None:
            return protection.emergency_stop_active(now=self._clock(), window=self.window)
        return False

    def clear(self, account_id: str, authorized_by: str, confirm: bool) -> None:
        if not confirm:
            raise EmergencyStopClearRefused(
                f"Clearing the emergency stop for account {account_id} requires explicit confirmation"
            )
        if not str(authorized_by or "").strip():
            raise EmergencyStopClearRefused(
                f"Clearing the emergency stop for account {account_id} requires an authorizing name"
            )

        state = self._state(account_id)
        with state.lock:
            state.record = None
        logger.warning("Emergency stop cleared for account %s by %s", account_id, authorized_by)
