import contextlib
import tempfile
import threading
import time
import unittest
from unittest import mock

from tradecore.broker_client import BrokerClient
from tradecore.config import RiskConfig
from tradecore.emergency_stop import EmergencyStopRegistry
from tradecore.errors import MarketClosed, RateLimited
from tradecore.models import (
    CALL_CREDIT_SPREAD,
    IRON_CONDOR,
    PUT_CREDIT_SPREAD,
    Order,
    OrderStatus,
    TradeCandidate,
)
from tradecore.risk_manager import RiskManager, RiskResult
from tradecore.storage import OrderStore
from tradecore.trade_executor import TradeExecutor, build_option_symbol


def _candidate(strategy=PUT_CREDIT_SPREAD, legs="575/570", symbol="SPY") -> TradeCandidate:
    return TradeCandidate(
        symbol=symbol,
        strategy=strategy,
        legs=legs,
        expiration="2026-02-20",
        credit=1.25,
        max_loss=375.0,
        risk_reward=0.33,
        pop=0.72,
        model_score=0.85,
        momentum_z=0.5,
        flow_z=0.3,
        thesis="support at 570",
    )


class TradeExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.store = OrderStore(self._tmp.name)

        self.broker = mock.Mock()
        self.broker.build_order_body.side_effect = BrokerClient.build_order_body
        self.broker.place_order.return_value = {"id": 9001, "status": "Received"}

        self.risk = mock.Mock()
        self.risk.account_lock.return_value = contextlib.nullcontext()
        self.risk.check_trade.return_value = RiskResult(allowed=True)

        self.alerts = mock.Mock()
        self.executor = TradeExecutor(
            self.broker, self.risk, self.store, "A1", "u1", alerts=self.alerts
        )

    def test_build_option_symbol(self) -> None:
        self.assertEqual(build_option_symbol("spy", "2026-02-20", 575, "P"), "SPY260220P00575000")
        self.assertEqual(build_option_symbol("AAPL", "2024-03-15T00:00:00", 152.5, "C"), "AAPL240315C00152500")

    def test_put_credit_spread_submits_two_legs(self) -> None:
        result = self.executor.execute_trade(_candidate())

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.broker_order_id, "9001")
        order = self.store.get(result.order_id)
        self.assertEqual(order.status, OrderStatus.SUBMITTED)
        self.assertEqual(order.price, 1.25)
        self.assertEqual(order.strategy, PUT_CREDIT_SPREAD)

        account_id, body = self.broker.place_order.call_args.args
        self.assertEqual(account_id, "A1")
        self.assertEqual(body["type"], "limit")
        self.assertEqual(body["action"], "sell-to-open")
        self.assertEqual(
            [(leg["symbol"], leg["action"]) for leg in body["legs"]],
            [("SPY260220P00575000", "sell-to-open"), ("SPY260220P00570000", "buy-to-open")],
        )
        params = self.risk.check_trade.call_args.args[0]
        self.assertEqual(params["trade_cost"], 375.0)
        self.alerts.trade_opened.assert_called_once()

    def test_leg_order_in_string_does_not_matter(self) -> None:
        self.executor.execute_trade(_candidate(legs="570/575"))

        body = self.broker.place_order.call_args.args[1]
        self.assertEqual(body["legs"][0]["symbol"], "SPY260220P00575000")
        self.assertEqual(body["legs"][0]["action"], "sell-to-open")

    def test_call_credit_spread_sells_lower_strike(self) -> None:
        self.executor.execute_trade(_candidate(CALL_CREDIT_SPREAD, "235/240", "AAPL"))

        legs = self.broker.place_order.call_args.args[1]["legs"]
        self.assertEqual(
            [(leg["symbol"], leg["action"]) for leg in legs],
            [("AAPL260220C00235000", "sell-to-open"), ("AAPL260220C00240000", "buy-to-open")],
        )

    def test_iron_condor_submits_four_legs(self) -> None:
        result = self.executor.execute_trade(_candidate(IRON_CONDOR, "485/480/520/525", "QQQ"))

        self.assertTrue(result.success)
        legs = self.broker.place_order.call_args.args[1]["legs"]
        self.assertEqual(
            [(leg["symbol"], leg["action"]) for leg in legs],
            [
                ("QQQ260220P00480000", "buy-to-open"),
                ("QQQ260220P00485000", "sell-to-open"),
                ("QQQ260220C00520000", "sell-to-open"),
                ("QQQ260220C00525000", "buy-to-open"),
            ],
        )

    def test_unsupported_strategy_never_touches_broker(self) -> None:
        result = self.executor.execute_trade(_candidate(strategy="Covered Call"))

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Strategy Covered Call not supported")
        self.assertEqual(result.error_kind, "unsupported_strategy")
        self.assertEqual(self.broker.mock_calls, [])
        self.risk.check_trade.assert_not_called()
        self.assertEqual(self.store.list(), [])

    def test_malformed_legs_are_validation_failures(self) -> None:
        result = self.executor.execute_trade(_candidate(legs="575"))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "validation_failed")
        self.broker.place_order.assert_not_called()

    def test_risk_rejection_returns_violations(self) -> None:
        self.risk.check_trade.return_value = RiskResult(allowed=False, violations=["halted"])

        result = self.executor.execute_trade(_candidate())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "risk_rejected")
        self.assertEqual(result.violations, ["halted"])
        self.broker.place_order.assert_not_called()
        self.assertEqual(self.store.list(), [])

    def test_broker_errors_carry_kind_and_retryable(self) -> None:
        for error, kind, retryable in (
            (RateLimited("slow down"), "rate_limited", True),
            (MarketClosed("market closed"), "market_closed", False),
        ):
            self.broker.place_order.side_effect = error

            result = self.executor.execute_trade(_candidate())

            self.assertFalse(result.success)
            self.assertEqual(result.error_kind, kind)
            self.assertEqual(result.retryable, retryable)
            self.assertEqual(self.store.get(result.order_id).status, OrderStatus.REJECTED)

    def test_risk_timeout_is_reported_as_retryable_timeout(self) -> None:
        self.risk.check_trade.return_value = RiskResult(
            allowed=False,
            violations=["Risk management system error - trade blocked for safety"],
            error_kind="timeout",
            retryable=True,
        )

        result = self.executor.execute_trade(_candidate())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "timeout")
        self.assertTrue(result.retryable)
        self.broker.place_order.assert_not_called()

    def test_duplicate_broker_id_returns_result_with_broker_id(self) -> None:
        self.store.save(Order(user_id="u1", account_id="A1", symbol="QQQ", quantity=1,
                              action="sell-to-open", price=1.0, broker_order_id="9001"))

        with self.assertLogs("tradecore.trade_executor", level="CRITICAL"):
            result = self.executor.execute_trade(_candidate())

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "persistence_failed")
        self.assertEqual(result.broker_order_id, "9001")
        self.assertIsNotNone(result.order_id)

    def test_accepts_candidate_dicts(self) -> None:
        result = self.executor.execute_trade(_candidate().to_dict())

        self.assertTrue(result.success)


class SharedBuyingPowerBroker:
    """Broker whose buying power drops as orders are placed."""

    build_order_body = staticmethod(BrokerClient.build_order_body)

    def __init__(self, buying_power: float):
        self.buying_power = buying_power
        self.events = []
        self._lock = threading.Lock()
        self._next_id = 100

    def get_balances(self, account_id):
        with self._lock:
            self.events.append("evaluate")
            return {
                "buying-power": self.buying_power,
                "cash-balance": 1_000.0,
                "day-trading-buying-power": 1_000.0,
                "maintenance-requirement": 0.0,
                "daily-pnl": 0.0,
            }

    def get_positions(self, account_id):
        return []

    def place_order(self, account_id, body):
        time.sleep(0.05)
        with self._lock:
            self.events.append("place")
            self.buying_power -= 500.0
            self._next_id += 1
            return {"id": self._next_id}


class ConcurrentExecutionTests(unittest.TestCase):
    def test_second_trade_is_evaluated_after_first_is_placed(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        broker = SharedBuyingPowerBroker(buying_power=1_000.0)
        config = RiskConfig(
            max_single_trade_pct=100.0,
            max_total_exposure_pct=100.0,
            max_symbol_concentration_pct=100.0,
            var_daily_limit_pct=100.0,
        )
        risk = RiskManager("u1", "A1", broker, config, EmergencyStopRegistry())
        executor = TradeExecutor(broker, risk, OrderStore(tmp.name), "A1", "u1")
        candidate = _candidate()
        candidate.max_loss = 500.0

        start = threading.Barrier(2)
        results = []

        def submit() -> None:
            start.wait()
            results.append(executor.execute_trade(candidate))

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(broker.events, ["evaluate", "place", "evaluate"])
        self.assertEqual(sorted(r.success for r in results), [False, True])
        rejected = next(r for r in results if not r.success)
        self.assertEqual(rejected.error_kind, "risk_rejected")


if __name__ == "__main__":
    unittest.main()
