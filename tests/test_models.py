import unittest

from tradecore.models import (
    IRON_CONDOR,
    Order,
    OrderStatus,
    Position,
    TradeCandidate,
    normalize_symbol,
)


def _order(**overrides) -> Order:
    values = dict(
        user_id="u1",
        account_id="A1",
        symbol="spy",
        quantity=1,
        action="buy-to-open",
        order_type="limit",
        price=1.25,
    )
    values.update(overrides)
    return Order(**values)


class NormalizeSymbolTests(unittest.TestCase):
    def test_normalize_is_idempotent(self) -> None:
        for raw in ("  aapl ", "SPY", "spy240315c00500000", "", None):
            once = normalize_symbol(raw)
            self.assertEqual(normalize_symbol(once), once)

    def test_normalize_uppercases_and_strips(self) -> None:
        self.assertEqual(normalize_symbol("  msft\n"), "MSFT")
        self.assertEqual(normalize_symbol(None), "")


class OrderTests(unittest.TestCase):
    def test_new_order_is_pending_with_normalized_fields(self) -> None:
        order = _order(action=" Buy-To-Open ", order_type="LIMIT", time_in_force="GTC")

        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.symbol, "SPY")
        self.assertEqual(order.action, "buy-to-open")
        self.assertEqual(order.order_type, "limit")
        self.assertEqual(order.time_in_force, "gtc")
        self.assertTrue(order.order_id.startswith("ord_"))
        self.assertTrue(order.is_opening)
        self.assertTrue(order.is_active)
        self.assertEqual(order.validate(), [])

    def test_validation_messages(self) -> None:
        self.assertIn("Symbol can't be blank", _order(symbol="  ").validate())
        self.assertIn("Symbol SPY$ is invalid", _order(symbol="spy$").validate())
        self.assertIn("Quantity must be greater than 0", _order(quantity=0).validate())
        self.assertIn("Price is required for limit orders", _order(price=None).validate())
        self.assertIn(
            "Stop price is required for stop orders",
            _order(order_type="stop", price=None).validate(),
        )
        self.assertEqual(_order(order_type="market", price=None).validate(), [])

    def test_legs_are_numbered_and_validated(self) -> None:
        order = _order(action="sell-to-open")
        order.add_leg("SPY260116P00575000", 1, "sell-to-open")
        order.add_leg("SPY260116P00570000", 1, "buy-to-open")

        self.assertEqual([leg.leg_number for leg in order.legs], [1, 2])
        self.assertTrue(order.is_multi_leg)
        self.assertTrue(all(leg.is_put for leg in order.legs))
        self.assertEqual(order.validate(), [])

        order.legs[1].leg_number = 1
        self.assertIn("Leg number 1 is duplicated", order.validate())

    def test_bad_leg_reports_leg_number(self) -> None:
        order = _order()
        order.add_leg("SPY260116C00600000", 0, "hold")

        errors = order.validate()

        self.assertIn("Leg 1: quantity must be greater than 0", errors)
        self.assertIn("Leg 1: action 'hold' is not valid", errors)

    def test_dict_round_trip_keeps_legs(self) -> None:
        order = _order(strategy=IRON_CONDOR)
        order.add_leg("SPY260116C00600000", 1, "sell-to-open", price=1.1)

        restored = Order.from_dict(order.to_dict())

        self.assertEqual(restored.order_id, order.order_id)
        self.assertEqual(restored.legs[0].symbol, "SPY260116C00600000")
        self.assertTrue(restored.legs[0].is_call)

    def test_total_value_uses_order_price_or_legs(self) -> None:
        self.assertAlmostEqual(_order(quantity=3, price=2.0).total_value, 6.0)
        order = _order(order_type="market", price=None)
        order.add_leg("SPY260116C00600000", 2, "buy-to-open", price=1.5)
        self.assertAlmostEqual(order.total_value, 3.0)


class PositionTests(unittest.TestCase):
    def test_short_option_position_pnl(self) -> None:
        position = Position(
            symbol="spy260116p00575000",
            quantity=-2,
            average_price=3.0,
            account_id="A1",
            user_id="u1",
            current_price=1.0,
        )

        self.assertTrue(position.is_short)
        self.assertTrue(position.is_option)
        self.assertFalse(position.is_stock)
        self.assertEqual(position.cost_basis, 6.0)
        self.assertEqual(position.unrealized_pnl, 4.0)
        self.assertAlmostEqual(position.unrealized_pnl_percent, 66.666666, places=4)

    def test_position_without_price_has_no_pnl(self) -> None:
        position = Position("AAPL", 10, 150.0, "A1", "u1")

        self.assertTrue(position.is_stock)
        self.assertIsNone(position.market_value)
        self.assertIsNone(position.unrealized_pnl)


class TradeCandidateTests(unittest.TestCase):
    def test_strikes_parse_from_legs(self) -> None:
        candidate = TradeCandidate(
            symbol="SPY",
            strategy=IRON_CONDOR,
            legs="485/480/520/525",
            expiration="2026-01-16",
            credit=1.5,
            max_loss=350.0,
            risk_reward=0.43,
            pop=0.7,
            model_score=75.0,
            momentum_z=0.1,
            flow_z=0.2,
            thesis="Range bound",
        )

        self.assertEqual(candidate.strikes, [485.0, 480.0, 520.0, 525.0])
        self.assertEqual(TradeCandidate.from_dict({**candidate.to_dict(), "extra": 1}), candidate)


if __name__ == "__main__":
    unittest.main()
