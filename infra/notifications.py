"""Email notifications for trade and report events (Resend HTTP API)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests

from core.interfaces import Notifier
from core.models import NotificationEvent, NotificationKind

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class NotificationConfig:
    enabled: bool
    api_key: Optional[str]
    from_address: str
    to_address: Optional[str]
    dry_run: bool
    timeout: float = 10.0
    dedupe_seconds: float = 60.0  # Suppress identical events within 60s
    api_url: str = RESEND_API_URL


class EmailNotifier(Notifier):
    """
    Fire-and-forget email dispatch.

    Features:
    - Deduplication: identical events within the dedupe window are dropped
    - Dry run: log the rendered email instead of sending
    - Never raises: delivery failures are logged
    """

    def __init__(self, config: NotificationConfig) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.dry_run or (config.api_key and config.to_address)))
        if config.enabled and not self._enabled:
            logger.warning("Notifications enabled but API key or recipient missing; disabling email")
        self._sent: Dict[str, float] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "EmailNotifier":
        raw_config = raw_config or {}

        api_key = raw_config.get("api_key")
        if not api_key:
            api_key = os.getenv(raw_config.get("api_key_env", "RESEND_API_KEY"), "")

        to_address = raw_config.get("to_address")
        if not to_address:
            to_address = os.getenv(raw_config.get("to_env", "NOTIFY_EMAIL_TO"), "")

        config = NotificationConfig(
            enabled=bool(raw_config.get("enabled", False)),
            api_key=api_key or None,
            from_address=raw_config.get("from_address", "Perp Agent <onboarding@resend.dev>"),
            to_address=to_address or None,
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 10.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
            api_url=raw_config.get("api_url", RESEND_API_URL),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(self, event: NotificationEvent) -> None:
        if not self._enabled:
            return

        try:
            subject, body = self.render(event)
        except Exception as e:
            logger.error(f"Failed to render {event.kind.value} notification: {e}")
            return

        fingerprint = self._fingerprint(event.kind, subject, body)
        now = time.monotonic()
        self._cleanup(now)
        if fingerprint in self._sent:
            logger.debug(f"Notification deduped: {subject}")
            return
        self._sent[fingerprint] = now

        self._send(subject, body)

    @staticmethod
    def render(event: NotificationEvent) -> Tuple[str, str]:
        """Return (subject, plain-text body) for an event."""
        p = event.payload
        if event.kind is NotificationKind.TRADE_EXECUTED:
            subject = f"🚀 Trade Executed: {str(p.get('direction', '')).upper()} {p.get('symbol')}"
            lines = [
                f"Symbol: {p.get('symbol')}",
                f"Direction: {str(p.get('direction', '')).upper()}",
                f"Entry: {_fmt(p.get('entry_price'))}",
                f"Quantity: {p.get('quantity')} contracts @ {p.get('leverage')}x",
                f"Stop Loss: {_fmt(p.get('stop_loss'))}",
                f"Take Profit: {_fmt(p.get('take_profit'))}",
                f"Confidence: {p.get('confidence')}%",
                f"Order: {p.get('order_ref')}",
                "",
                str(p.get("reasoning") or ""),
            ]
        elif event.kind is NotificationKind.TRADE_CLOSED:
            pnl = float(p.get("pnl") or 0.0)
            outcome = "Profit" if pnl > 0 else "Loss"
            marker = "✅" if pnl > 0 else "❌"
            subject = f"{marker} Trade Closed: {p.get('symbol')} - {outcome} ${abs(pnl):.2f}"
            lines = [
                f"Symbol: {p.get('symbol')}",
                f"Direction: {str(p.get('direction', '')).upper()}",
                f"Status: {p.get('status')}",
                f"Entry: {_fmt(p.get('entry_price'))}",
                f"Exit: {_fmt(p.get('exit_price'))}",
                f"PnL: {pnl:+.2f} ({float(p.get('pnl_pct') or 0.0):+.2f}%)",
            ]
        elif event.kind is NotificationKind.DAILY_REPORT:
            subject = f"📊 Daily Trading Report - {p.get('date')}"
            lines = [
                f"Total PnL: {float(p.get('total_pnl') or 0.0):+.2f}",
                f"Trades: {p.get('total_trades', 0)} "
                f"(W {p.get('winning_trades', 0)} / L {p.get('losing_trades', 0)})",
                f"Win rate: {float(p.get('win_rate') or 0.0):.1f}%",
                f"Best: {p.get('best_asset') or '-'} {_fmt(p.get('largest_win'))}",
                f"Worst: {p.get('worst_asset') or '-'} {_fmt(p.get('largest_loss'))}",
            ]
            for trade in p.get("trades", []):
                lines.append(
                    f"  {str(trade.get('direction', '')).upper()} {trade.get('symbol')} "
                    f"{trade.get('status')} PnL={float(trade.get('pnl') or 0.0):+.2f}"
                )
        else:
            raise ValueError(f"Unknown notification kind: {event.kind}")
        return subject, "\n".join(lines)

    def _send(self, subject: str, body: str) -> None:
        if self._config.dry_run:
            logger.info("[EMAIL] %s | %s", subject, body.replace("\n", " | "))
            return

        payload = {
            "from": self._config.from_address,
            "to": [self._config.to_address],
            "subject": subject,
            "text": body,
        }
        try:
            response = requests.post(
                self._config.api_url,
                headers={
                    "Authorization": f"Bearer {self._config.api_key}",
                    "Content-Type": "application/json",
                },
                data=json.dumps(payload),
                timeout=self._config.timeout,
            )
            response.raise_for_status()
            logger.info(f"Email sent: {subject}")
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to deliver email '%s': %s", subject, exc)

    def _cleanup(self, now: float) -> None:
        expired = [fp for fp, sent_at in self._sent.items() if now - sent_at > self._config.dedupe_seconds]
        for fp in expired:
            del self._sent[fp]

    @staticmethod
    def _fingerprint(kind: NotificationKind, subject: str, body: str) -> str:
        content = f"{kind.value}|{subject}|{body}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _fmt(value: Any) -> str:
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):
        return "-"


__all__ = ["EmailNotifier", "NotificationConfig"]
