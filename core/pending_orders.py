"""
perp-agent Core: Pending Limit Orders

In-memory registry of unfilled limit intents. Each entry is either
triggered (price condition met), expired (TTL elapsed) or cancelled;
all three remove it from the store.

At most one active entry per (symbol, direction).
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import math
import secrets
import threading

from core.models import (
    Direction,
    ExecutionStrategy,
    PendingLimitOrder,
    Recommendation,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingOrderPolicy:
    ttl_minutes: float = 15.0
    trigger_tolerance_pct: float = 0.1

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "PendingOrderPolicy":
        raw_config = raw_config or {}
        return cls(
            ttl_minutes=float(raw_config.get("ttl_minutes", cls.ttl_minutes)),
            trigger_tolerance_pct=float(raw_config.get("trigger_tolerance_pct", cls.trigger_tolerance_pct)),
        )


class PendingOrderStore:
    """
    Registry of pending limit intents keyed by opaque id.

    Accessed from both the analysis pass (add) and the monitor pass
    (check/expire), so every operation holds the store lock.
    """

    def __init__(self, policy: Optional[PendingOrderPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.policy = policy or PendingOrderPolicy()
        self._clock = clock or utcnow
        self._orders: Dict[str, PendingLimitOrder] = {}
        self._lock = threading.RLock()

    def add(self, recommendation: Recommendation, current_price: float) -> Optional[str]:
        """
        Register a limit intent.

        Returns:
            Order id, or None if an active entry already exists for the
            same symbol and direction
        """
        direction = recommendation.side
        if direction is Direction.NONE:
            raise ValueError("Cannot register a pending order without direction")

        with self._lock:
            self.clear_expired()
            if self.has_active(recommendation.symbol, direction.value):
                logger.info(
                    f"Pending {direction.value} order already active for "
                    f"{recommendation.symbol}, refusing duplicate"
                )
                return None

            now = self._clock()
            order_id = f"limit_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"
            order = PendingLimitOrder(
                id=order_id,
                recommendation=recommendation,
                market_price_at_creation=current_price,
                created_at=now,
                expires_at=now + timedelta(minutes=self.policy.ttl_minutes),
            )
            self._orders[order_id] = order

        logger.info(
            f"📝 Pending {direction.value.upper()} limit {order_id}: "
            f"target={recommendation.entry_price:.2f} market={current_price:.2f} "
            f"expires={order.expires_at.astimezone(timezone.utc).strftime('%H:%M:%S')}Z"
        )
        return order_id

    def check_pending_orders(self, current_price: float) -> Optional[Recommendation]:
        """
        Purge expired entries, then return the first triggered entry (if any)
        as a market recommendation with the trigger price as entry.

        Long triggers when price <= target * (1 + tolerance);
        short triggers when price >= target * (1 - tolerance).
        At most one trigger per call.
        """
        with self._lock:
            self.clear_expired()

            if not isinstance(current_price, (int, float)) or not math.isfinite(current_price) or current_price <= 0:
                return None

            tolerance = self.policy.trigger_tolerance_pct / 100.0
            for order_id, order in list(self._orders.items()):
                if not self._is_triggered(order, current_price, tolerance):
                    continue

                del self._orders[order_id]
                logger.info(
                    f"🎯 Limit {order_id} triggered: {order.direction.upper()} "
                    f"target={order.target_entry:.2f} price={current_price:.2f}"
                )
                return replace(
                    order.recommendation,
                    entry_price=float(current_price),
                    execution_strategy=ExecutionStrategy.MARKET.value,
                    strategy_reason=f"Limit {order_id} triggered at {current_price:.2f}",
                )
        return None

    @staticmethod
    def _is_triggered(order: PendingLimitOrder, price: float, tolerance: float) -> bool:
        direction = Direction.parse(order.direction)
        if direction is Direction.LONG:
            return price <= order.target_entry * (1 + tolerance)
        if direction is Direction.SHORT:
            return price >= order.target_entry * (1 - tolerance)
        return False

    def clear_expired(self) -> int:
        """Remove entries whose expiry has elapsed. Returns number removed."""
        now = self._clock()
        with self._lock:
            expired = [oid for oid, order in self._orders.items() if order.is_expired(now)]
            for order_id in expired:
                del self._orders[order_id]
                logger.info(f"⌛ Limit {order_id} expired without trigger")
        return len(expired)

    def cancel(self, order_id: str) -> bool:
        with self._lock:
            order = self._orders.pop(order_id, None)
        if order is None:
            return False
        logger.info(f"Cancelled pending limit {order_id}")
        return True

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._orders)
            self._orders.clear()
        if count:
            logger.info(f"Cleared {count} pending limit order(s)")
        return count

    def has_active(self, symbol: str, direction: str) -> bool:
        now = self._clock()
        with self._lock:
            return any(
                o.symbol == symbol and o.direction == direction and not o.is_expired(now)
                for o in self._orders.values()
            )

    def get_pending_orders(self) -> List[PendingLimitOrder]:
        with self._lock:
            return list(self._orders.values())

    def count(self) -> int:
        with self._lock:
            return len(self._orders)

    def __len__(self) -> int:
        return self.count()
