import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from tradecore.emergency_stop import EmergencyStopRegistry
from tradecore.errors import EmergencyStopClearRefused, ProtectionRangeError
from tradecore.protection import PortfolioProtection
from tradecore.storage import ProtectionStore


class PortfolioProtectionTests(unittest.TestCase):
    def test_defaults(self) -> None:
        protection = PortfolioProtection(user_id="u1", account_id="A1")

        self.assertEqual(protection.cash_reserve_percentage, 25.0)
        self.assertEqual(protection.max_daily_loss_percentage, 5.0)
        self.assertEqual(protection.max_single_trade_percentage, 10.0)
        self.assertEqual(protection.max_portfolio_exposure_percentage, 75.0)
        self.assertEqual(protection.max_daily_trades, 50)
        self.assertTrue(protection.active)

    def test_ranges_are_enforced_on_assignment(self) -> None:
        protection = PortfolioProtection(user_id="u1", account_id="A1")

        protection.cash_reserve_percentage = 20
        protection.cash_reserve_percentage = 50
        protection.max_portfolio_exposure_percentage = 85
        protection.max_daily_loss_percentage = 15

        bad_values = [
            ("cash_reserve_percentage", 19.99),
            ("cash_reserve_percentage", 50.01),
            ("max_daily_loss_percentage", 0),
            ("max_single_trade_percentage", 20.5),
            ("max_portfolio_exposure_percentage", 49),
            ("max_position_concentration_percentage", 0),
            ("trailing_stop_percentage", 100.1),
            ("max_daily_trades", 0),
            ("max_daily_trades", 2.5),
            ("cash_reserve_percentage", "lots"),
        ]
        for name, value in bad_values:
            with self.assertRaises(ProtectionRangeError, msg=f"{name}={value!r}"):
                setattr(protection, name, value)
        self.assertEqual(protection.cash_reserve_percentage, 50.0)

    def test_out_of_range_constructor_value_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PortfolioProtection(user_id="u1", account_id="A1", max_single_trade_percentage=25)

    def test_derived_limits(self) -> None:
        protection = PortfolioProtection(user_id="u1", account_id="A1")

        self.assertEqual(protection.available_buying_power(100_000), 75_000)
        self.assertEqual(protection.available_buying_power(-5), 0.0)
        self.assertEqual(protection.max_trade_size(100_000), 10_000)
        self.assertTrue(protection.daily_loss_limit_breached(-5_000, 100_000))
        self.assertFalse(protection.daily_loss_limit_breached(-4_999, 100_000))
        self.assertFalse(protection.daily_loss_limit_breached(1_000, 100_000))

    def test_emergency_stop_activate_and_clear(self) -> None:
        protection = PortfolioProtection(user_id="u1", account_id="A1")

        protection.activate_emergency_stop("daily loss", triggered_by="risk")

        self.assertTrue(protection.emergency_stop_active())
        self.assertFalse(protection.active)
        self.assertEqual(protection.emergency_stop_reason, "daily loss")
        later = datetime.now(timezone.utc) + timedelta(hours=25)
        self.assertFalse(protection.emergency_stop_active(now=later))

        protection.clear_emergency_stop("alice")

        self.assertFalse(protection.emergency_stop_active())
        self.assertTrue(protection.active)
        self.assertEqual(protection.emergency_stop_cleared_by, "alice")

    def test_for_user_account_creates_and_reloads(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = ProtectionStore(tmp_dir)
            created = PortfolioProtection.for_user_account(store, "u1", "A1")
            created.cash_reserve_percentage = 35
            created.save(store)

            loaded = PortfolioProtection.for_user_account(store, "u1", "A1")

        self.assertEqual(loaded.cash_reserve_percentage, 35.0)
        self.assertIsNotNone(loaded.updated_at)

    def test_risk_status_report(self) -> None:
        protection = PortfolioProtection(user_id="u1", account_id="A1")
        account = {
            "buying_power": 100_000.0,
            "total_portfolio_value": 100_000.0,
            "daily_pnl": -6_000.0,
            "cash_balance": 10_000.0,
        }

        report = protection.risk_status_report(account)

        status = report["current_status"]
        self.assertEqual(status["available_for_trading"], 75_000.0)
        self.assertEqual(status["current_exposure_percentage"], 90.0)
        self.assertEqual(status["daily_pnl_percentage"], -6.0)
        self.assertEqual(status["cash_reserve_percentage_actual"], 10.0)
        self.assertEqual(len(report["violations"]), 3)
        self.assertEqual(protection.risk_status_report(None)["violations"], [])


class EmergencyStopRegistryTests(unittest.TestCase):
    def test_non_positive_expiry_is_refused(self) -> None:
        for hours in (0, -1):
            with self.assertRaises(ValueError):
                EmergencyStopRegistry(expiry_hours=hours)

    def test_clear_requires_confirmation_and_name(self) -> None:
        registry = EmergencyStopRegistry()
        registry.trigger("A1", "halt", "system")

        with self.assertRaises(EmergencyStopClearRefused):
            registry.clear("A1", "alice", confirm=False)
        with self.assertRaises(EmergencyStopClearRefused):
            registry.clear("A1", "", confirm=True)
        self.assertTrue(registry.is_active("A1"))

        registry.clear("A1", "alice", confirm=True)

        self.assertFalse(registry.is_active("A1"))
        self.assertIsNone(registry.record("A1"))

    def test_stops_are_per_account(self) -> None:
        registry = EmergencyStopRegistry()
        record = registry.trigger("A1", "halt", "system")

        self.assertEqual(record.to_dict()["reason"], "halt")
        self.assertTrue(registry.is_active("A1"))
        self.assertFalse(registry.is_active("A2"))

    def test_stop_expires_after_window(self) -> None:
        now = [datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)]
        registry = EmergencyStopRegistry(expiry_hours=24, clock=lambda: now[0])
        registry.trigger("A1", "halt", "system")

        now[0] += timedelta(hours=24)

        self.assertFalse(registry.is_active("A1"))

    def test_account_lock_is_reentrant(self) -> None:
        registry = EmergencyStopRegistry()

        with registry.account_lock("A1"):
            with registry.account_lock("A1"):
                registry.trigger("A1", "nested", "system")

        self.assertTrue(registry.is_active("A1"))


if __name__ == "__main__":
    unittest.main()
