"""Mirror broker positions into the local position store."""

from __future__ import annotations

import logging
import re

from tradecore.models import Position, utc_now_iso
from tradecore.number_utils import safe_float

logger = logging.getLogger(__name__)


class PositionSync:
    def __init__(self, broker, store, user_id: str):
        self.broker = broker
        self.store = store
        self.user_id = user_id

    def sync(self, account_id: str) -> dict:
        """Upsert broker positions and close stored ones the broker no longer reports.

        Returns counts of ``updated`` and ``closed`` positions.
        """
        items = self.broker.get_positions(account_id)
        now = utc_now_iso()
        seen: set[str] = set()
        updated = 0

        for item in items:
            symbol = re.sub(r"\s+", "", str(item.get("symbol", ""))).upper()
            quantity = safe_float(item.get("quantity"))
            if not symbol or quantity == 0:
                continue
            if str(item.get("quantity-direction", "")).lower() == "short" and quantity > 0:
                quantity = -quantity

            size = abs(quantity)
            position = Position(
                symbol=symbol,
                quantity=quantity,
                average_price=abs(safe_float(item.get("cost-basis"))) / size,
                current_price=abs(safe_float(item.get("market-value"))) / size,
                account_id=account_id,
                user_id=self.user_id,
                instrument_type=str(item.get("instrument-type", "")),
                last_updated_at=now,
            )
            self.store.upsert(position)
            seen.add(symbol)
            updated += 1

        closed = 0
        for position in self.store.list(account_id=account_id):
            if position.symbol in seen:
                continue
            position.quantity = 0
            position.closed_at = now
            position.last_updated_at = now
            self.store.upsert(position)
            closed += 1

        logger.info(
            "Synced positions for account %s: %d updated, %d closed",
            account_id,
            updated,
            closed,
        )
        return {"updated": updated, "closed": closed}
