"""Thin REST client for a tastytrade-style brokerage API."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

import requests

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

logger = logging.getLogger(__name__)

# Internal order param -> wire key.
_ORDER_BODY_KEYS = (
    ("order_type", "type"),
    ("symbol", "symbol"),
    ("quantity", "quantity"),
    ("action", "action"),
    ("price", "price"),
    ("stop_price", "stop-price"),
    ("time_in_force", "time-in-force"),
    ("legs", "legs"),
)


class BrokerClient:
    """Brokerage REST API wrapper that maps HTTP failures onto ``BrokerError``."""

    def __init__(self, config: BrokerConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if config.session_token:
            self.session.headers["Authorization"] = config.session_token

    def is_authenticated(self) -> bool:
        return bool(str(self.config.session_token or "").strip())

    # ── Accounts ───────────────────────────────────────────────────

    def get_accounts(self) -> list[dict]:
        data = self._request("GET", "/customers/me/accounts", operation="get_accounts")
        return _items(data)

    def get_account(self, account_id: str) -> dict:
        return self._request(
            "GET", f"/accounts/{account_id}", operation="get_account", account_id=account_id
        )

    def get_balances(self, account_id: str) -> dict:
        return self._request(
            "GET",
            f"/accounts/{account_id}/balances",
            operation="get_balances",
            account_id=account_id,
        )

    def get_positions(self, account_id: str) -> list[dict]:
        data = self._request(
            "GET",
            f"/accounts/{account_id}/positions",
            operation="get_positions",
            account_id=account_id,
        )
        return _items(data)

    # ── Market data ────────────────────────────────────────────────

    def get_quote(self, symbol: str) -> dict:
        data = self._request(
            "GET", "/marketdata/quotes", params={"symbols": symbol}, operation="get_quote"
        )
        items = _items(data)
        if items:
            return items[0]
        return data if isinstance(data, dict) else {}

    def get_quotes(self, symbols: list[str]) -> list[dict]:
        data = self._request(
            "GET",
            "/marketdata/quotes",
            params={"symbols": ",".join(symbols)},
            operation="get_quotes",
        )
        return _items(data)

    def get_option_chain(self, symbol: str, expiration: Optional[str] = None) -> dict:
        params = {"expiration_date": expiration} if expiration else None
        return self._request(
            "GET",
            f"/option-chains/{symbol}/nested",
            params=params,
            operation="get_option_chain",
        )

    def get_market_hours(self, on: Optional[date] = None) -> dict:
        day = (on or date.today()).isoformat()
        return self._request("GET", f"/market-calendar/{day}", operation="get_market_hours")

    # ── Orders ─────────────────────────────────────────────────────

    def place_order(self, account_id: str, body: dict) -> dict:
        data = self._request(
            "POST",
            f"/accounts/{account_id}/orders",
            json_body=body,
            operation="place_order",
            account_id=account_id,
        )
        return _order_payload(data)

    def get_order(self, account_id: str, order_id: str) -> dict:
        data = self._request(
            "GET",
            f"/accounts/{account_id}/orders/{order_id}",
            operation="get_order",
            account_id=account_id,
        )
        return _order_payload(data)

    def get_orders(self, account_id: str, filters: Optional[dict] = None) -> list[dict]:
        data = self._request(
            "GET",
            f"/accounts/{account_id}/orders",
            params=filters or None,
            operation="get_orders",
            account_id=account_id,
        )
        return _items(data)

    def cancel_order(self, account_id: str, order_id: str) -> dict:
        return self._request(
            "DELETE",
            f"/accounts/{account_id}/orders/{order_id}",
            operation="cancel_order",
            account_id=account_id,
        )

    def replace_order(self, account_id: str, order_id: str, body: dict) -> dict:
        data = self._request(
            "PUT",
            f"/accounts/{account_id}/orders/{order_id}",
            json_body=body,
            operation="replace_order",
            account_id=account_id,
        )
        return _order_payload(data)

    @staticmethod
    def build_order_body(params: dict) -> dict:
        """Map internal order params to the wire body, dropping empty keys."""
        body: dict[str, Any] = {}
        for source, target in _ORDER_BODY_KEYS:
            value = params.get(source)
            if value is None or value == "" or value == []:
                continue
            body[target] = value
        if "legs" in body:
            body["legs"] = [
                {k: v for k, v in leg.items() if v is not None} for leg in body["legs"]
            ]
        body.setdefault("time-in-force", "day")
        return body

    # ── Transport ──────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        operation: str,
        account_id: Optional[str] = None,
    ) -> Any:
        url = f"{self.config.api_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise BrokerTimeout(
                f"Broker did not respond within {self.config.timeout_seconds:g}s",
                operation=operation,
                account_id=account_id,
            ) from exc
        except requests.RequestException as exc:
            raise ApiError(
                f"Connection to broker failed: {exc.__class__.__name__}",
                operation=operation,
                account_id=account_id,
            ) from exc

        return self._handle_response(response, operation=operation, account_id=account_id)

    @staticmethod
    def _handle_response(
        response: requests.Response,
        *,
        operation: str,
        account_id: Optional[str] = None,
    ) -> Any:
        status = response.status_code
        context = {"operation": operation, "account_id": account_id, "status_code": status}

        if 200 <= status < 300:
            if not response.content:
                return {}
            payload = response.json()
            if isinstance(payload, dict) and "data" in payload:
                return payload["data"]
            return payload

        message = _error_message(response)
        lowered = message.lower()

        if status == 401:
            raise AuthExpired("Authentication token expired", **context)
        if status == 403:
            if "insufficient funds" in lowered:
                raise InsufficientFunds(message, **context)
            if "market closed" in lowered:
                raise MarketClosed(message, **context)
            raise ApiError(f"Forbidden: {message}", **context)
        if status == 404:
            raise NotFound(f"Not found: {message}", **context)
        if status == 422:
            raise ValidationFailed(_validation_message(response) or message, **context)
        if status == 429:
            raise RateLimited("Rate limit exceeded. Please try again later.", **context)
        if status == 503:
            raise MaintenanceError("Broker API is currently under maintenance", **context)

        logger.debug("Unexpected broker status %s for %s", status, operation)
        raise ApiError(f"Request failed ({status}): {message}", **context)


def _json_or_none(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(response: requests.Response) -> str:
    payload = _json_or_none(response)
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return (response.text or "").strip()[:500]


def _validation_message(response: requests.Response) -> str:
    payload = _json_or_none(response)
    if not isinstance(payload, dict):
        return ""
    error = payload.get("error")
    if not isinstance(error, dict):
        return ""
    errors = error.get("errors") or []
    return ", ".join(
        f"{item.get('field', '')}: {item.get('message', '')}"
        for item in errors
        if isinstance(item, dict)
    )


def _items(data: Any) -> list[dict]:
    if isinstance(data, dict):
        items = data.get("items")
        if isinstance(items, list):
            return [item for item in items if isinstance(item, dict)]
        return []
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    return []


def _order_payload(data: Any) -> dict:
    if isinstance(data, dict) and isinstance(data.get("order"), dict):
        return data["order"]
    return data if isinstance(data, dict) else {}


