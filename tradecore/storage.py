"""JSON-file persistence for orders, positions, protection settings and scans.

Every store keeps its whole collection in one JSON document that is rewritten
atomically with owner-only permissions on each change.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from tradecore.models import Order, Position

logger = logging.getLogger(__name__)

ORDERS_FILE = "orders.json"
POSITIONS_FILE = "positions.json"
PROTECTIONS_FILE = "protections.json"
SCAN_RESULTS_FILE = "scan_results.json"

MAX_SCAN_SNAPSHOTS = 365

_PRIVATE_FILE_MODE = 0o600
_GROUP_OR_OTHER_BITS = stat.S_IRWXG | stat.S_IRWXO


class DuplicateBrokerOrderId(ValueError):
    """Two stored orders may not share a broker order id."""


# ── File helpers ─────────────────────────────────────────────────────


def _check_regular_file(path: Path, label: str) -> None:
    if path.is_symlink():
        raise RuntimeError(f"Refusing to use symlink for {label}: {path}")
    if path.exists() and not path.is_file():
        raise RuntimeError(f"{label} path is not a regular file: {path}")


def _tighten_permissions(path: Path, label: str) -> None:
    if os.name != "posix" or not path.exists():
        return
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & _GROUP_OR_OTHER_BITS:
            path.chmod(_PRIVATE_FILE_MODE)
            logger.warning("Tightened permissions for %s at %s to 0o600.", label, path)
    except OSError as exc:
        logger.warning("Failed to tighten permissions for %s at %s: %s", label, path, exc)


def atomic_write_private(path: Path, content: str, label: str) -> None:
    """Write ``content`` to ``path`` via a private temp file and ``os.replace``."""
    _check_regular_file(path, label)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        if os.name == "posix":
            os.fchmod(tmp_fd, _PRIVATE_FILE_MODE)
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        tmp_fd = -1
        os.replace(tmp_path, path)
    finally:
        if tmp_fd != -1:
            os.close(tmp_fd)
        if tmp_path.exists():
            tmp_path.unlink()


class JsonFileStore:
    """A single JSON document on disk guarded by an in-process lock."""

    def __init__(self, path: Path | str, label: str, default_factory=dict):
        self.path = Path(path)
        self.label = label
        self._default_factory = default_factory
        self._lock = threading.RLock()

    def load(self) -> Any:
        with self._lock:
            if not self.path.exists():
                return self._default_factory()
            _check_regular_file(self.path, self.label)
            _tighten_permissions(self.path, self.label)
            try:
                with open(self.path, encoding="utf-8") as handle:
                    return json.load(handle)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Failed to load %s from %s: %s", self.label, self.path, exc)
                return self._default_factory()

    def save(self, payload: Any) -> None:
        with self._lock:
            atomic_write_private(
                self.path,
                json.dumps(payload, indent=2, default=str),
                label=self.label,
            )

    @property
    def lock(self) -> threading.RLock:
        return self._lock


# ── Orders ───────────────────────────────────────────────────────────


class OrderStore:
    """Orders keyed by internal order id."""

    def __init__(self, data_dir: Path | str):
        self._file = JsonFileStore(Path(data_dir) / ORDERS_FILE, label="order store")

    def save(self, order: Order) -> Order:
        """Insert or update ``order``. Rejects a broker id already used by another order."""
        order.updated_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        with self._file.lock:
            orders = self._file.load()
            if order.broker_order_id:
                for other_id, other in orders.items():
                    if other_id != order.order_id and other.get("broker_order_id") == order.broker_order_id:
                        raise DuplicateBrokerOrderId(
                            f"Broker order id {order.broker_order_id} already belongs to order {other_id}"
                        )
            orders[order.order_id] = order.to_dict()
            self._file.save(orders)
        return order

    def get(self, order_id: str) -> Optional[Order]:
        raw = self._file.load().get(order_id)
        return Order.from_dict(raw) if raw else None

    def find_by_broker_id(self, broker_order_id: str) -> Optional[Order]:
        for raw in self._file.load().values():
            if raw.get("broker_order_id") == broker_order_id:
                return Order.from_dict(raw)
        return None

    def list(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[Order]:
        wanted = set(statuses) if statuses else None
        result = []
        for raw in self._file.load().values():
            if account_id and raw.get("account_id") != account_id:
                continue
            if wanted is not None and raw.get("status") not in wanted:
                continue
            result.append(Order.from_dict(raw))
        result.sort(key=lambda o: o.created_at)
        return result


# ── Positions ────────────────────────────────────────────────────────


class PositionStore:
    """Positions keyed by ``account_id:symbol``."""

    def __init__(self, data_dir: Path | str):
        self._file = JsonFileStore(Path(data_dir) / POSITIONS_FILE, label="position store")

    @staticmethod
    def _key(account_id: str, symbol: str) -> str:
        return f"{account_id}:{symbol}"

    def upsert(self, position: Position) -> Position:
        with self._file.lock:
            positions = self._file.load()
            positions[self._key(position.account_id, position.symbol)] = position.to_dict()
            self._file.save(positions)
        return position

    def get(self, account_id: str, symbol: str) -> Optional[Position]:
        raw = self._file.load().get(self._key(account_id, symbol))
        return Position.from_dict(raw) if raw else None

    def list(self, account_id: Optional[str] = None, include_closed: bool = False) -> list[Position]:
        result = []
        for raw in self._file.load().values():
            position = Position.from_dict(raw)
            if account_id and position.account_id != account_id:
                continue
            if not include_closed and not position.is_open:
                continue
            result.append(position)
        return result


# ── Portfolio protection ─────────────────────────────────────────────


class ProtectionStore:
    """Raw protection settings keyed by ``user_id:account_id``."""

    def __init__(self, data_dir: Path | str):
        self._file = JsonFileStore(Path(data_dir) / PROTECTIONS_FILE, label="protection store")

    def get(self, user_id: str, account_id: str) -> Optional[dict]:
        return self._file.load().get(f"{user_id}:{account_id}")

    def put(self, user_id: str, account_id: str, settings: dict) -> None:
        with self._file.lock:
            records = self._file.load()
            records[f"{user_id}:{account_id}"] = dict(settings)
            self._file.save(records)


# ── Scan results ─────────────────────────────────────────────────────


class ScanResultStore:
    """Per-user scan snapshots, newest last, capped at ``MAX_SCAN_SNAPSHOTS``."""

    def __init__(self, data_dir: Path | str, max_snapshots: int = MAX_SCAN_SNAPSHOTS):
        self._file = JsonFileStore(
            Path(data_dir) / SCAN_RESULTS_FILE,
            label="scan result store",
            default_factory=list,
        )
        self.max_snapshots = max(1, int(max_snapshots))

    def append(self, user_id: str, scan_data: dict, trades_found: int) -> dict:
        snapshot = {
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
            "trades_found": int(trades_found),
            "scan_data": scan_data,
        }
        with self._file.lock:
            snapshots = self._file.load()
            if not isinstance(snapshots, list):
                snapshots = []
            snapshots.append(snapshot)
            self._file.save(snapshots[-self.max_snapshots:])
        return snapshot

    def list(self, user_id: Optional[str] = None) -> list[dict]:
        snapshots = self._file.load()
        if not isinstance(snapshots, list):
            return []
        if user_id is None:
            return snapshots
        return [s for s in snapshots if s.get("user_id") == user_id]

    def latest(self, user_id: str) -> Optional[dict]:
        snapshots = self.list(user_id)
        return snapshots[-1] if snapshots else None
