"""
Tests for EmailNotifier

Rendering, dedupe window, dry-run logging, and delivery failures that
must never propagate to the trading loop.
"""

import json
import logging
from unittest.mock import Mock, patch

import pytest
import requests

from core.models import NotificationEvent, NotificationKind
from infra.notifications import EmailNotifier, NotificationConfig


def _config(**overrides):
    base = dict(enabled=True, api_key="re_test", from_address="agent@example.com",
                to_address="me@example.com", dry_run=False)
    base.update(overrides)
    return NotificationConfig(**base)


def _executed(**payload):
    data = {"symbol": "ETHUSD", "direction": "long", "entry_price": 2704.05, "quantity": 369,
            "leverage": 10, "stop_loss": 2690.53, "take_profit": 2731.09, "confidence": 85,
            "order_ref": "1001", "reasoning": "Breakout"}
    data.update(payload)
    return NotificationEvent(kind=NotificationKind.TRADE_EXECUTED, payload=data)


class TestRender:
    def test_trade_executed_subject(self):
        subject, body = EmailNotifier.render(_executed())
        assert subject == "🚀 Trade Executed: LONG ETHUSD"
        assert "Entry: 2704.05" in body
        assert "369 contracts @ 10x" in body

    @pytest.mark.parametrize("pnl,expected", [
        (67.5, "✅ Trade Closed: ETHUSD - Profit $67.50"),
        (-16.0, "❌ Trade Closed: ETHUSD - Loss $16.00"),
        (0.0, "❌ Trade Closed: ETHUSD - Loss $0.00"),
    ])
    def test_trade_closed_subject(self, pnl, expected):
        event = NotificationEvent(kind=NotificationKind.TRADE_CLOSED,
                                  payload={"symbol": "ETHUSD", "direction": "long", "pnl": pnl})
        subject, _ = EmailNotifier.render(event)
        assert subject == expected

    def test_daily_report_lists_trades(self):
        event = NotificationEvent(kind=NotificationKind.DAILY_REPORT, payload={
            "date": "2025-03-14", "total_pnl": 51.5, "total_trades": 2,
            "winning_trades": 1, "losing_trades": 1, "win_rate": 50.0,
            "trades": [{"symbol": "ETHUSD", "direction": "short", "status": "tp_hit", "pnl": 67.5}],
        })
        subject, body = EmailNotifier.render(event)
        assert subject == "📊 Daily Trading Report - 2025-03-14"
        assert "Win rate: 50.0%" in body
        assert "SHORT ETHUSD tp_hit PnL=+67.50" in body


class TestDelivery:
    def test_posts_to_resend(self):
        notifier = EmailNotifier(_config())
        with patch("infra.notifications.requests.post") as mock_post:
            notifier.notify(_executed())

        assert mock_post.call_count == 1
        kwargs = mock_post.call_args[1]
        assert kwargs["headers"]["Authorization"] == "Bearer re_test"
        payload = json.loads(kwargs["data"])
        assert payload["to"] == ["me@example.com"]
        assert payload["subject"].startswith("🚀 Trade Executed")

    def test_duplicate_event_suppressed(self):
        notifier = EmailNotifier(_config())
        with patch("infra.notifications.requests.post") as mock_post:
            notifier.notify(_executed())
            notifier.notify(_executed())
            notifier.notify(_executed(order_ref="1002"))

        assert mock_post.call_count == 2

    def test_delivery_failure_is_logged_not_raised(self, caplog):
        notifier = EmailNotifier(_config())
        with patch("infra.notifications.requests.post",
                   side_effect=requests.exceptions.ConnectionError("smtp relay down")):
            with caplog.at_level(logging.ERROR):
                notifier.notify(_executed())

        assert "Failed to deliver email" in caplog.text

    def test_http_error_is_logged(self, caplog):
        response = Mock()
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("422")
        notifier = EmailNotifier(_config())
        with patch("infra.notifications.requests.post", return_value=response):
            with caplog.at_level(logging.ERROR):
                notifier.notify(_executed())

        assert "Failed to deliver email" in caplog.text

    def test_dry_run_logs_instead_of_sending(self, caplog):
        notifier = EmailNotifier(_config(dry_run=True, api_key=None))
        with patch("infra.notifications.requests.post") as mock_post:
            with caplog.at_level(logging.INFO):
                notifier.notify(_executed())

        assert mock_post.call_count == 0
        assert "[EMAIL] 🚀 Trade Executed: LONG ETHUSD" in caplog.text


class TestConfiguration:
    def test_disabled_without_credentials(self):
        notifier = EmailNotifier(_config(api_key=None))
        assert notifier.is_enabled() is False
        with patch("infra.notifications.requests.post") as mock_post:
            notifier.notify(_executed())
        assert mock_post.call_count == 0

    def test_from_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_env")
        monkeypatch.setenv("NOTIFY_EMAIL_TO", "ops@example.com")

        notifier = EmailNotifier.from_config({"enabled": True})

        assert notifier.is_enabled()
        assert notifier._config.api_key == "re_env"
        assert notifier._config.to_address == "ops@example.com"

    def test_from_config_defaults_disabled(self):
        assert EmailNotifier.from_config(None).is_enabled() is False
