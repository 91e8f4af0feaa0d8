import unittest
from unittest import mock

import requests

from tradecore.broker_client import BrokerClient
from tradecore.config import BrokerConfig
from tradecore.errors import (
    ApiError,
    AuthExpired,
    BrokerTimeout,
    InsufficientFunds,
    MaintenanceError,
    MarketClosed,
    NotFound,
    RateLimited,
    ValidationFailed,
)


def _response(status: int, payload=None, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.content = b"{}" if payload is not None else b""
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


class BrokerClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.MagicMock()
        self.session.headers = {}
        self.client = BrokerClient(
            BrokerConfig(
                api_url="https://broker.test",
                session_token="secret-token",
                account_id="5WT0001",
                timeout_seconds=7,
            ),
            session=self.session,
        )

    def test_session_headers_carry_token(self) -> None:
        self.assertEqual(self.session.headers["Authorization"], "secret-token")
        self.assertEqual(self.session.headers["Accept"], "application/json")
        self.assertTrue(self.client.is_authenticated())
        self.assertFalse(BrokerClient(BrokerConfig(), session=mock.MagicMock()).is_authenticated())

    def test_balances_unwrap_data_envelope(self) -> None:
        self.session.request.return_value = _response(200, {"data": {"cash-balance": "1000.5"}})

        balances = self.client.get_balances("5WT0001")

        self.assertEqual(balances, {"cash-balance": "1000.5"})
        self.session.request.assert_called_once_with(
            "GET",
            "https://broker.test/accounts/5WT0001/balances",
            params=None,
            json=None,
            timeout=7,
        )

    def test_positions_and_orders_return_items(self) -> None:
        self.session.request.return_value = _response(
            200, {"data": {"items": [{"symbol": "SPY"}, "junk"]}}
        )

        self.assertEqual(self.client.get_positions("5WT0001"), [{"symbol": "SPY"}])
        self.assertEqual(self.client.get_orders("5WT0001", {"status": "working"}), [{"symbol": "SPY"}])
        _, kwargs = self.session.request.call_args
        self.assertEqual(kwargs["params"], {"status": "working"})

    def test_place_order_unwraps_order(self) -> None:
        self.session.request.return_value = _response(
            201, {"data": {"order": {"id": 42, "status": "Received"}}}
        )

        order = self.client.place_order("5WT0001", {"type": "limit"})

        self.assertEqual(order["id"], 42)
        args, kwargs = self.session.request.call_args
        self.assertEqual(args[0], "POST")
        self.assertEqual(kwargs["json"], {"type": "limit"})

    def test_empty_success_body(self) -> None:
        self.session.request.return_value = _response(204)

        self.assertEqual(self.client.cancel_order("5WT0001", "42"), {})

    def test_status_codes_map_to_errors(self) -> None:
        cases = [
            (_response(401, {"error": {"message": "expired"}}), AuthExpired),
            (_response(403, {"error": {"message": "Insufficient funds for order"}}), InsufficientFunds),
            (_response(403, {"error": {"message": "Market closed"}}), MarketClosed),
            (_response(403, {"error": {"message": "nope"}}), ApiError),
            (_response(404, text="missing"), NotFound),
            (_response(429, text="slow"), RateLimited),
            (_response(503, text="down"), MaintenanceError),
            (_response(500, text="boom"), ApiError),
        ]
        for response, error_cls in cases:
            self.session.request.return_value = response
            with self.assertRaises(error_cls) as ctx:
                self.client.get_account("5WT0001")
            self.assertEqual(ctx.exception.operation, "get_account")
            self.assertEqual(ctx.exception.account_id, "5WT0001")
            self.assertNotIn("secret-token", str(ctx.exception))

    def test_validation_errors_join_field_messages(self) -> None:
        self.session.request.return_value = _response(
            422,
            {"error": {"message": "invalid", "errors": [{"field": "price", "message": "too low"}]}},
        )

        with self.assertRaises(ValidationFailed) as ctx:
            self.client.place_order("5WT0001", {})

        self.assertEqual(ctx.exception.message, "price: too low")
        self.assertFalse(ctx.exception.retryable)

    def test_retryable_flags(self) -> None:
        self.assertTrue(RateLimited("x").retryable)
        self.assertTrue(MaintenanceError("x").retryable)
        self.assertTrue(BrokerTimeout("x").retryable)
        self.assertFalse(InsufficientFunds("x").retryable)
        self.assertEqual(BrokerTimeout("x").to_dict()["kind"], "timeout")

    def test_timeout_raises_broker_timeout(self) -> None:
        self.session.request.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(BrokerTimeout) as ctx:
            self.client.get_quote("SPY")

        self.assertEqual(ctx.exception.operation, "get_quote")

    def test_connection_error_raises_api_error(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(ApiError):
            self.client.get_positions("5WT0001")

    def test_build_order_body_maps_keys_and_drops_empty(self) -> None:
        body = BrokerClient.build_order_body({
            "order_type": "limit",
            "symbol": "SPY",
            "quantity": 1,
            "action": "sell-to-open",
            "price": 1.2,
            "stop_price": None,
            "time_in_force": "",
            "legs": [{"symbol": "SPY260116P00575000", "quantity": 1, "action": "sell-to-open", "price": None}],
        })

        self.assertEqual(body["type"], "limit")
        self.assertEqual(body["time-in-force"], "day")
        self.assertNotIn("stop-price", body)
        self.assertEqual(body["legs"], [{"symbol": "SPY260116P00575000", "quantity": 1, "action": "sell-to-open"}])


if __name__ == "__main__":
    unittest.main()
