"""
perp-agent Core: Trade Ledger

Creates, reads and mutates persisted Trade records and rolls realized
PnL into the DailyPerformance aggregate.

PnL model (linear perpetual contracts):
    pnl     = sign * (exit - entry) * quantity * contract_value * leverage
    pnl_pct = sign * (exit - entry) / entry * 100
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import math

from core.interfaces import Notifier, Repository
from core.models import (
    DailyPerformance,
    NotificationEvent,
    NotificationKind,
    Trade,
    TradeStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_CORRECTABLE_FIELDS = {"exit_price", "status", "stop_loss", "take_profit", "quantity", "entry_price"}


def compute_pnl(trade: Trade, exit_price: float) -> Tuple[float, float]:
    """Return (realized_pnl, pnl_pct) for closing trade at exit_price."""
    move = trade.sign * (exit_price - trade.entry_price)
    pnl = move * trade.quantity * trade.contract_value * trade.leverage
    pnl_pct = (move / trade.entry_price) * 100.0 if trade.entry_price else 0.0
    return pnl, pnl_pct


class TradeLedger:
    """
    Trade persistence and performance roll-up.

    Terminal trades are immutable except through force_correct().
    """

    def __init__(self, repository: Repository, notifier: Optional[Notifier] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.notifier = notifier
        self._clock = clock or utcnow

    # ----- reads -----

    def get_open_trades(self) -> List[Trade]:
        return self.repository.get_open_trades()

    def count_open_trades(self) -> int:
        return len(self.repository.get_open_trades())

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        return self.repository.get_trade(trade_id)

    def get_recent_trades(self, limit: int = 50) -> List[Trade]:
        return self.repository.get_trades(limit=limit)

    def get_daily_performance(self, date: Optional[str] = None) -> Optional[DailyPerformance]:
        date = date or self._clock().date().isoformat()
        return self.repository.get_daily_performance(date)

    # ----- writes -----

    def create_trade(self, trade: Trade) -> Trade:
        if not trade.order_ref:
            raise ValueError("Trade requires a confirmed exchange order reference")
        self.repository.create_trade(trade)
        logger.info(
            f"Recorded trade {trade.id}: {trade.direction.upper()} {trade.quantity}x {trade.symbol} "
            f"@ {trade.entry_price:.2f} (order={trade.order_ref})"
        )
        return trade

    def close_trade(self, trade: Trade, exit_price: float,
                    status: str = TradeStatus.CLOSED.value) -> Trade:
        """
        Close an open trade at exit_price with a terminal status.

        The trade update and the daily performance roll-up are written in
        one repository transaction; the notification goes out afterwards.
        """
        if trade.is_terminal():
            raise ValueError(f"Trade {trade.id} already terminal ({trade.status})")
        if status not in (TradeStatus.TP_HIT.value, TradeStatus.SL_HIT.value, TradeStatus.CLOSED.value):
            raise ValueError(f"Invalid close status: {status}")
        if not isinstance(exit_price, (int, float)) or not math.isfinite(exit_price) or exit_price <= 0:
            raise ValueError(f"Invalid exit price: {exit_price}")

        pnl, pnl_pct = compute_pnl(trade, exit_price)
        trade.exit_price = float(exit_price)
        trade.exit_time = self._clock()
        trade.pnl = pnl
        trade.pnl_pct = pnl_pct
        trade.status = status

        with self.repository.transaction():
            self.repository.update_trade(trade)
            self._roll_into_daily(trade)

        emoji = "✅" if pnl > 0 else "❌"
        logger.info(
            f"{emoji} Trade {trade.id} {status}: {trade.direction.upper()} {trade.symbol} "
            f"entry={trade.entry_price:.2f} exit={exit_price:.2f} "
            f"PnL={pnl:+.2f} ({pnl_pct:+.2f}%)"
        )
        self._notify(NotificationEvent(NotificationKind.TRADE_CLOSED, trade.to_dict()))
        return trade

    def cancel_trade(self, trade: Trade) -> Trade:
        """Mark an unfilled trade cancelled. No performance roll-up."""
        if trade.is_terminal():
            raise ValueError(f"Trade {trade.id} already terminal ({trade.status})")
        trade.status = TradeStatus.CANCELLED.value
        trade.exit_time = self._clock()
        trade.pnl = 0.0
        trade.pnl_pct = 0.0
        self.repository.update_trade(trade)
        logger.info(f"Trade {trade.id} cancelled on exchange with no fill")
        return trade

    def force_correct(self, trade_id: str, **changes: Any) -> Trade:
        """
        Correct a data-entry error on a trade, terminal or not.

        PnL is recomputed when exit_price or sizing changes. Daily
        performance rows are not rewritten.
        """
        unknown = set(changes) - _CORRECTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not correctable: {sorted(unknown)}")

        trade = self.repository.get_trade(trade_id)
        if trade is None:
            raise KeyError(f"Trade not found: {trade_id}")

        for name, value in changes.items():
            setattr(trade, name, value)

        if trade.exit_price is not None:
            trade.pnl, trade.pnl_pct = compute_pnl(trade, trade.exit_price)
            if trade.exit_time is None:
                trade.exit_time = self._clock()

        self.repository.update_trade(trade)
        logger.warning(f"Force-corrected trade {trade_id}: {changes}")
        return trade

    def build_daily_report(self, date: Optional[str] = None) -> Dict[str, Any]:
        date = date or self._clock().date().isoformat()
        performance = self.repository.get_daily_performance(date) or DailyPerformance(date=date)
        closed_today = [
            t.to_dict() for t in self.repository.get_trades(limit=500)
            if t.exit_time is not None and t.exit_time.date().isoformat() == date
            and t.status != TradeStatus.CANCELLED.value
        ]
        report = performance.to_dict()
        report["trades"] = closed_today
        return report

    def _roll_into_daily(self, trade: Trade) -> None:
        date = (trade.exit_time or self._clock()).date().isoformat()
        performance = self.repository.get_daily_performance(date) or DailyPerformance(date=date)
        performance.record(trade.symbol, trade.pnl or 0.0)
        performance.trading_mode = trade.trading_mode
        self.repository.save_daily_performance(performance)

    def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"Notification {event.kind.value} failed: {e}")
