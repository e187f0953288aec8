"""
perp-agent Core: Monitor Loop

Periodic reconciliation pass:
1. Check pending limit triggers against the live price (one fill per pass)
2. Reconcile open trades against exchange order/position state
3. Close terminal trades through the ledger
4. Purge expired pending orders (always)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from core.concurrency import MONITOR, ConcurrencyGuard
from core.execution import ExecutionDecider, ExecutionResult
from core.interfaces import MarketDataProvider, TradingAPI
from core.models import OrderState, Trade, TradeStatus, utcnow
from core.pending_orders import PendingOrderStore
from core.risk_sanitizer import is_valid_price
from core.trade_ledger import TradeLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorPolicy:
    warmup_seconds: float = 60.0

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "MonitorPolicy":
        raw_config = raw_config or {}
        return cls(warmup_seconds=float(raw_config.get("warmup_seconds", cls.warmup_seconds)))


@dataclass
class MonitorResult:
    """Summary of one monitor pass"""
    current_price: Optional[float] = None
    triggered: Optional[ExecutionResult] = None
    closed: List[Trade] = field(default_factory=list)
    cancelled: List[Trade] = field(default_factory=list)
    checked: int = 0
    expired_purged: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_price": self.current_price,
            "triggered": self.triggered.to_dict() if self.triggered else None,
            "closed": [t.id for t in self.closed],
            "cancelled": [t.id for t in self.cancelled],
            "checked": self.checked,
            "expired_purged": self.expired_purged,
            "errors": self.errors,
        }


def resolve_exit_status(trade: Trade, fill_price: float) -> str:
    """sl_hit vs tp_hit by distance of the fill to stop vs target (closer wins)."""
    to_stop = abs(fill_price - trade.stop_loss)
    to_target = abs(fill_price - trade.take_profit)
    if to_stop < to_target:
        return TradeStatus.SL_HIT.value
    if to_target < to_stop:
        return TradeStatus.TP_HIT.value
    return TradeStatus.CLOSED.value


def has_open_position(positions: List[Dict[str, Any]], trade: Trade) -> bool:
    """True if a position on the trade's symbol with the trade's sign remains."""
    for position in positions:
        if position.get("symbol") != trade.symbol:
            continue
        try:
            size = float(position.get("size") or 0)
        except (TypeError, ValueError):
            continue
        if size * trade.sign > 0:
            return True
    return False


class MonitorLoop:
    """
    Reconciles local state with the exchange on the monitor cadence.

    Never creates a Trade itself: triggered limits go through the
    ExecutionDecider, which records a Trade only after order confirmation.
    """

    def __init__(self,
                 market_data: MarketDataProvider,
                 trading_api: TradingAPI,
                 ledger: TradeLedger,
                 pending_store: PendingOrderStore,
                 decider: ExecutionDecider,
                 settings_provider: Callable[[], Any],
                 guard: Optional[ConcurrencyGuard] = None,
                 policy: Optional[MonitorPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.market_data = market_data
        self.trading_api = trading_api
        self.ledger = ledger
        self.pending_store = pending_store
        self.decider = decider
        self.settings_provider = settings_provider
        self.guard = guard or ConcurrencyGuard()
        self.policy = policy or MonitorPolicy()
        self._clock = clock or utcnow

    def run_pass(self) -> Optional[MonitorResult]:
        """Run one pass under the monitor latch. Returns None if skipped."""
        ran, result = self.guard.run(MONITOR, self.execute_pass)
        return result if ran else None

    def execute_pass(self) -> MonitorResult:
        result = MonitorResult()
        try:
            try:
                price = self.market_data.get_current_price()
            except Exception as e:
                logger.warning(f"Monitor: price fetch failed, skipping reconciliation: {e}")
                result.errors.append(f"price: {e}")
                return result

            if not is_valid_price(price):
                logger.warning(f"Monitor: invalid price {price}, skipping reconciliation")
                result.errors.append(f"price: invalid {price}")
                return result
            result.current_price = price

            triggered = self.pending_store.check_pending_orders(price)
            if triggered is not None:
                result.triggered = self._execute_trigger(triggered, price, result)
                return result

            self._reconcile_open_trades(result)
            return result
        finally:
            result.expired_purged += self.pending_store.clear_expired()
            logger.debug(f"Monitor pass: {result.to_dict()}")

    def _execute_trigger(self, recommendation, price: float,
                         result: MonitorResult) -> Optional[ExecutionResult]:
        try:
            settings = self.settings_provider()
            open_count = self.ledger.count_open_trades()
            return self.decider.execute(recommendation, settings, price, open_count)
        except Exception as e:
            logger.error(f"Monitor: triggered limit execution failed: {e}", exc_info=True)
            result.errors.append(f"trigger: {e}")
            return None

    def _reconcile_open_trades(self, result: MonitorResult) -> None:
        now = self._clock()
        positions: Optional[List[Dict[str, Any]]] = None

        for trade in self.ledger.get_open_trades():
            if not trade.order_ref:
                continue
            if trade.age_seconds(now) < self.policy.warmup_seconds:
                logger.debug(f"Trade {trade.id} inside warm-up window, skipping")
                continue

            result.checked += 1
            try:
                status = self.trading_api.get_order_status(trade.order_ref)
                state = str(status.state).lower()

                if state == OrderState.CLOSED.value:
                    if positions is None:
                        positions = self.trading_api.get_positions() or []
                    if has_open_position(positions, trade):
                        continue
                    fill_price = status.avg_fill_price
                    if not is_valid_price(fill_price):
                        logger.warning(
                            f"Trade {trade.id}: order closed but no usable fill price, leaving untouched"
                        )
                        continue
                    exit_status = resolve_exit_status(trade, fill_price)
                    self.ledger.close_trade(trade, fill_price, exit_status)
                    result.closed.append(trade)

                elif state == OrderState.CANCELLED.value:
                    if status.filled_qty == 0:
                        self.ledger.cancel_trade(trade)
                        result.cancelled.append(trade)
                    else:
                        logger.warning(
                            f"Trade {trade.id}: cancelled with partial fill {status.filled_qty}, "
                            f"leaving untouched"
                        )
            except Exception as e:
                logger.error(f"Monitor: reconciliation failed for trade {trade.id}: {e}")
                result.errors.append(f"{trade.id}: {e}")
