"""Webhook alerts for emergency stops, trades and scan results."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import requests

from tradecore.config import AlertsConfig

logger = logging.getLogger(__name__)

LEVEL_ORDER = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}


class AlertManager:
    """Post alerts to an optional webhook. Disabled unless configured."""

    def __init__(self, config: AlertsConfig):
        self.config = config
        self._threshold = LEVEL_ORDER.get(str(config.min_level).upper(), 30)

    def send(
        self,
        *,
        level: str,
        title: str,
        message: str,
        context: Optional[dict] = None,
    ) -> bool:
        """Send an alert if enabled and at or above the threshold."""
        normalized = str(level).upper()
        if LEVEL_ORDER.get(normalized, 40) < self._threshold:
            return False
        if not self.config.enabled:
            return False
        webhook = str(self.config.webhook_url or "").strip()
        if not webhook:
            return False

        timestamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        text = f"[TradeCore][{normalized}] {title}\n{message}"
        if context:
            text = f"{text}\ncontext={json.dumps(context, default=str, separators=(',', ':'))}"

        payload = self._format_payload(
            text=text,
            level=normalized,
            title=title,
            timestamp=timestamp,
            context=context or {},
        )

        try:
            response = requests.post(webhook, json=payload, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            return True
        except requests.RequestException as exc:
            logger.warning("Failed to send alert webhook: %s", exc)
            return False

    def emergency_stop(self, reason: str, *, context: Optional[dict] = None) -> bool:
        return self.send(
            level="CRITICAL",
            title="Emergency Stop",
            message=f"Trading halted: {reason}",
            context=context,
        )

    def trade_opened(self, message: str, *, context: Optional[dict] = None) -> bool:
        if not self.config.trade_notifications:
            return False
        return self.send(level="INFO", title="Trade Opened", message=message, context=context)

    def scan_opportunities(self, message: str, *, context: Optional[dict] = None) -> bool:
        if not self.config.opportunity_notifications:
            return False
        return self.send(level="INFO", title="Scan Opportunities", message=message, context=context)

    def risk_warning(self, message: str, *, context: Optional[dict] = None) -> bool:
        return self.send(level="WARNING", title="Risk Warning", message=message, context=context)

    def _format_payload(
        self,
        *,
        text: str,
        level: str,
        title: str,
        timestamp: str,
        context: dict,
    ) -> dict:
        webhook_format = str(self.config.webhook_format or "generic").lower()
        if webhook_format == "slack":
            blocks = [
                {"type": "section", "text": {"type": "mrkdwn", "text": f"*[{level}]* *{title}*"}},
                {"type": "section", "text": {"type": "mrkdwn", "text": text}},
            ]
            return {"text": text, "blocks": blocks}

        if webhook_format == "discord":
            embed = {
                "title": title,
                "description": text,
                "timestamp": timestamp,
                "color": 0xE74C3C if level in {"ERROR", "CRITICAL"} else (
                    0xF39C12 if level == "WARNING" else 0x2ECC71
                ),
                "fields": [{"name": "Level", "value": level, "inline": True}],
            }
            return {"embeds": [embed]}

        return {
            "text": text,
            "level": level,
            "title": title,
            "timestamp": timestamp,
            "source": "tradecore",
            "context": context,
        }
