import tempfile
import unittest
from datetime import date, datetime
from unittest import mock
from zoneinfo import ZoneInfo

from tradecore.config import BotConfig
from tradecore.errors import ApiError, ScanAlreadyRunning
from tradecore.market_scanner import ScanResult
from tradecore.models import PUT_CREDIT_SPREAD, TradeCandidate
from tradecore.scan_job import MarketScanJob
from tradecore.storage import ScanResultStore
from tradecore.trade_executor import ExecutionResult

NY = ZoneInfo("America/New_York")


def _trade(symbol: str) -> TradeCandidate:
    return TradeCandidate(
        symbol=symbol,
        strategy=PUT_CREDIT_SPREAD,
        legs="100/95",
        expiration="2026-02-20",
        credit=1.2,
        max_loss=380.0,
        risk_reward=0.32,
        pop=0.7,
        model_score=0.8,
        momentum_z=0.1,
        flow_z=0.1,
        thesis="test",
    )


class MarketScanJobTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.config = BotConfig()
        self.broker = mock.Mock()
        self.broker.is_authenticated.return_value = True
        self.scanner = mock.Mock()
        self.scanner.scan.return_value = ScanResult([_trade("SPY"), _trade("QQQ")], {"scan_mode": "live"})
        self.risk = mock.Mock()
        self.risk.emergency_stop_active.return_value = False
        self.executor = mock.Mock()
        self.executor.execute_trade.return_value = ExecutionResult(True, "placed")
        self.store = ScanResultStore(self._tmp.name)
        self.alerts = mock.Mock()

    def _job(self, market_open=True) -> MarketScanJob:
        job = MarketScanJob(
            self.config, self.broker, self.scanner, self.risk, self.executor, self.store,
            alerts=self.alerts,
        )
        job.is_market_open = mock.Mock(return_value=market_open)
        return job

    def test_market_hours(self) -> None:
        job = MarketScanJob(self.config, self.broker, self.scanner, self.risk, self.executor, self.store)

        self.assertTrue(job.is_market_open(datetime(2026, 1, 5, 9, 30, tzinfo=NY)))
        self.assertTrue(job.is_market_open(datetime(2026, 1, 5, 16, 0, tzinfo=NY)))
        self.assertFalse(job.is_market_open(datetime(2026, 1, 5, 9, 29, tzinfo=NY)))
        self.assertFalse(job.is_market_open(datetime(2026, 1, 3, 12, 0, tzinfo=NY)))

    def test_broker_calendar_holiday_closes_market(self) -> None:
        job = MarketScanJob(self.config, self.broker, self.scanner, self.risk, self.executor, self.store)
        self.broker.get_market_hours.return_value = {"date": "2026-01-19", "is-open": False}

        self.assertFalse(job.is_market_open(datetime(2026, 1, 19, 11, 0, tzinfo=NY)))
        self.broker.get_market_hours.assert_called_once_with(date(2026, 1, 19))

    def test_calendar_failure_uses_session_hours(self) -> None:
        job = MarketScanJob(self.config, self.broker, self.scanner, self.risk, self.executor, self.store)
        self.broker.get_market_hours.side_effect = ApiError("down", operation="get_market_hours")

        with self.assertLogs("tradecore.scan_job", level="WARNING"):
            self.assertTrue(job.is_market_open(datetime(2026, 1, 5, 11, 0, tzinfo=NY)))

    def test_calendar_not_consulted_outside_session(self) -> None:
        job = MarketScanJob(self.config, self.broker, self.scanner, self.risk, self.executor, self.store)

        self.assertFalse(job.is_market_open(datetime(2026, 1, 3, 12, 0, tzinfo=NY)))
        self.broker.get_market_hours.assert_not_called()

    def test_skips_without_broker_session(self) -> None:
        self.broker.is_authenticated.return_value = False

        summary = self._job().perform("u1")

        self.assertEqual(summary, {"status": "skipped", "reason": "not_authenticated"})
        self.scanner.scan.assert_not_called()

    def test_skips_when_emergency_stop_active(self) -> None:
        self.risk.emergency_stop_active.return_value = True

        summary = self._job().perform("u1")

        self.assertEqual(summary["reason"], "emergency_stop")
        self.scanner.scan.assert_not_called()

    def test_skips_when_market_closed(self) -> None:
        summary = self._job(market_open=False).perform("u1")

        self.assertEqual(summary["reason"], "market_closed")

    def test_skips_overlapping_scan(self) -> None:
        self.scanner.scan.side_effect = ScanAlreadyRunning("u1")

        summary = self._job().perform("u1")

        self.assertEqual(summary["reason"], "scan_in_progress")

    def test_stores_snapshot_and_notifies_without_trading(self) -> None:
        summary = self._job().perform("u1")

        self.assertEqual(summary, {"status": "completed", "trades_found": 2, "executed": 0})
        self.assertEqual(self.store.latest("u1")["trades_found"], 2)
        self.alerts.scan_opportunities.assert_called_once()
        self.executor.execute_trade.assert_not_called()

    def test_auto_trading_executes_each_trade_and_continues_on_error(self) -> None:
        self.config.schedule.auto_trading_enabled = True
        self.executor.execute_trade.side_effect = [RuntimeError("boom"), ExecutionResult(True, "placed")]

        summary = self._job().perform("u1")

        self.assertEqual(summary["executed"], 1)
        self.assertEqual(self.executor.execute_trade.call_count, 2)

    def test_no_trades_found(self) -> None:
        self.scanner.scan.return_value = ScanResult([], {})

        summary = self._job().perform("u1")

        self.assertEqual(summary["trades_found"], 0)
        self.assertIsNone(self.store.latest("u1"))

    def test_setup_schedule_registers_interval_job(self) -> None:
        self.config.schedule.scan_interval_minutes = 7
        job = self._job()

        job.setup_schedule("u1")

        self.assertEqual(len(job.scheduler.jobs), 1)
        self.assertEqual(job.scheduler.jobs[0].interval, 7)

    def test_scheduled_scan_alerts_on_failure(self) -> None:
        self.scanner.scan.side_effect = RuntimeError("boom")
        job = self._job()

        job._scheduled_scan("u1")

        self.alerts.send.assert_called_once()


if __name__ == "__main__":
    unittest.main()
