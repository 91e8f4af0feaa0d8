"""Scheduled market scanning with optional auto-execution."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import schedule

from tradecore.config import BotConfig
from tradecore.errors import BrokerError, ScanAlreadyRunning

logger = logging.getLogger(__name__)


def _parse_clock(value: str, default: tuple[int, int]) -> tuple[int, int]:
    try:
        hour, minute = (int(part) for part in str(value).split(":", 1))
        return hour, minute
    except ValueError:
        logger.warning("Invalid market clock time %r, using %02d:%02d", value, *default)
        return default


class MarketScanJob:
    """Runs the scanner every few minutes while the market is open."""

    def __init__(
        self,
        config: BotConfig,
        broker,
        scanner,
        risk_manager,
        executor,
        scan_store,
        alerts=None,
    ):
        self.config = config
        self.broker = broker
        self.scanner = scanner
        self.risk_manager = risk_manager
        self.executor = executor
        self.scan_store = scan_store
        self.alerts = alerts
        self.scheduler = schedule.Scheduler()
        self._running = False
        self._cancel = threading.Event()
        self._tz = ZoneInfo(config.schedule.timezone)

    def is_market_open(self, now: Optional[datetime] = None) -> bool:
        """Weekday and regular-session check, then the broker's calendar for holidays."""
        if now is None:
            now_local = datetime.now(self._tz)
        elif now.tzinfo is None:
            now_local = now.replace(tzinfo=self._tz)
        else:
            now_local = now.astimezone(self._tz)

        if now_local.strftime("%A").lower() not in self.config.schedule.trading_days:
            return False
        open_h, open_m = _parse_clock(self.config.schedule.market_open, (9, 30))
        close_h, close_m = _parse_clock(self.config.schedule.market_close, (16, 0))
        market_open = now_local.replace(hour=open_h, minute=open_m, second=0, microsecond=0)
        market_close = now_local.replace(hour=close_h, minute=close_m, second=0, microsecond=0)
        if not market_open <= now_local <= market_close:
            return False
        return not self._calendar_closed(now_local)

    def _calendar_closed(self, now_local: datetime) -> bool:
        """True only when the broker calendar explicitly marks the day closed."""
        try:
            calendar = self.broker.get_market_hours(now_local.date())
        except BrokerError as exc:
            logger.warning("Market calendar unavailable, using regular session hours: %s", exc)
            return False
        if not isinstance(calendar, dict):
            return False
        is_open = calendar.get("is-open", calendar.get("is_open"))
        if is_open is False or str(is_open).strip().lower() == "false":
            logger.info("Broker calendar reports %s closed", now_local.date().isoformat())
            return True
        return False

    def perform(self, user_id: str) -> dict:
        """One scheduled scan cycle. Returns a small status summary."""
        if not self.broker.is_authenticated():
            logger.warning("User %s has no broker session, skipping scan", user_id)
            return {"status": "skipped", "reason": "not_authenticated"}

        if self.risk_manager.emergency_stop_active():
            logger.info("User %s has an active emergency stop, skipping scan", user_id)
            return {"status": "skipped", "reason": "emergency_stop"}

        if not self.is_market_open():
            logger.info("Markets closed, skipping scan for user %s", user_id)
            return {"status": "skipped", "reason": "market_closed"}

        try:
            result = self.scanner.scan(user_id, cancel_event=self._cancel)
        except ScanAlreadyRunning:
            logger.info("Previous scan for user %s still running, skipping", user_id)
            return {"status": "skipped", "reason": "scan_in_progress"}

        trades = result.candidates
        if not trades:
            logger.info("No trades found meeting criteria for user %s", user_id)
            return {"status": "completed", "trades_found": 0, "executed": 0}

        logger.info("Found %d trades for user %s", len(trades), user_id)
        self.scan_store.append(user_id, result.to_dict(), len(trades))

        if self.config.schedule.notify_opportunities and self.alerts is not None:
            self.alerts.scan_opportunities(
                f"{len(trades)} trade opportunities found",
                context={"symbols": [t.symbol for t in trades]},
            )

        executed = 0
        if self.config.schedule.auto_trading_enabled:
            logger.info("Auto-executing %d trades for user %s", len(trades), user_id)
            for trade in trades:
                try:
                    outcome = self.executor.execute_trade(trade)
                except Exception as exc:
                    logger.error("Failed to execute trade %s for user %s: %s", trade.symbol, user_id, exc)
                    continue
                if outcome.success:
                    executed += 1
                logger.info(
                    "Executed trade %s %s for user %s: %s",
                    trade.symbol,
                    trade.strategy,
                    user_id,
                    outcome.message,
                )

        return {"status": "completed", "trades_found": len(trades), "executed": executed}

    # ── Scheduling & Main Loop ─────────────────────────────────────

    def setup_schedule(self, user_id: str) -> None:
        interval = self.config.schedule.scan_interval_minutes
        self.scheduler.every(interval).minutes.do(self._scheduled_scan, user_id)
        logger.info("Scheduled market scans every %d minutes", interval)

    def _scheduled_scan(self, user_id: str) -> None:
        try:
            self.perform(user_id)
        except Exception as exc:
            logger.exception("Market scan job failed for user %s: %s", user_id, exc)
            if self.alerts is not None:
                self.alerts.send(level="ERROR", title="Market scan failed", message=str(exc))

    def run(self, user_id: str) -> None:
        """Block and run scheduled scans until ``stop()`` or Ctrl+C."""
        self.setup_schedule(user_id)
        self._running = True
        self._cancel.clear()
        logger.info("Scanner loop running. Press Ctrl+C to stop.")
        try:
            while self._running:
                self.scheduler.run_pending()
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Scanner loop stopped by user.")
            self._running = False
        finally:
            self.scheduler.clear()

    def stop(self) -> None:
        self._running = False
        self._cancel.set()
        logger.info("Scanner stop requested.")
