"""
perp-agent Core: Execution Decider

Turns a sanitized recommendation into exactly one of:
- a placed order (Trade persisted after the exchange confirms it)
- a deferred limit intent (PendingOrderStore id)
- a rejection (reason logged, nothing written)

Expected business-rule failures never raise. Collaborator failures
(exchange unreachable, auth errors) propagate as CollaboratorError.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging
import math
import threading

from core.interfaces import Notifier, TradingAPI
from core.models import (
    Direction,
    ExecutionStrategy,
    NotificationEvent,
    NotificationKind,
    Recommendation,
    Settings,
    Trade,
    utcnow,
)
from core.pending_orders import PendingOrderStore
from core.risk_sanitizer import RiskSanitizer, bracket_is_ordered, is_valid_price
from core.trade_ledger import TradeLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPolicy:
    min_limit_deviation_pct: float = 0.05
    max_limit_deviation_pct: float = 0.5
    collateral_priority: Tuple[str, ...] = ("USDT", "USDC", "INR", "USD")

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "ExecutionPolicy":
        raw_config = raw_config or {}
        priority = raw_config.get("collateral_priority") or cls.collateral_priority
        return cls(
            min_limit_deviation_pct=float(raw_config.get("min_limit_deviation_pct", cls.min_limit_deviation_pct)),
            max_limit_deviation_pct=float(raw_config.get("max_limit_deviation_pct", cls.max_limit_deviation_pct)),
            collateral_priority=tuple(str(c).upper() for c in priority),
        )


@dataclass
class ExecutionResult:
    """Outcome of one execution decision"""
    trade: Optional[Trade] = None
    pending_order_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    dry_run: bool = False

    @property
    def outcome(self) -> str:
        if self.trade is not None:
            return "placed"
        if self.pending_order_id is not None:
            return "deferred"
        return "dry_run" if self.dry_run else "rejected"

    @property
    def success(self) -> bool:
        return self.trade is not None or self.pending_order_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "trade_id": self.trade.id if self.trade else None,
            "pending_order_id": self.pending_order_id,
            "rejection_reason": self.rejection_reason,
        }


def select_collateral(balances: Sequence[Dict[str, Any]],
                      priority: Sequence[str]) -> Optional[Dict[str, Any]]:
    """Pick the collateral wallet by asset priority, falling back to the first balance."""
    if not balances:
        return None
    by_asset = {}
    for balance in balances:
        asset = str(balance.get("asset_symbol") or balance.get("asset") or "").upper()
        by_asset.setdefault(asset, balance)
    for asset in priority:
        if asset in by_asset:
            return by_asset[asset]
    return balances[0]


def available_amount(balance: Optional[Dict[str, Any]]) -> float:
    if not balance:
        return 0.0
    raw = balance.get("available_balance")
    if raw in (None, ""):
        raw = balance.get("balance")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


class ExecutionDecider:
    """
    Market-vs-limit decision, sizing, bracket and placement.

    Decision rule:
    1. Reject if open trades >= max concurrent
    2. Pick collateral, apply allocation; reject if non-positive
    3. Size = floor(allocated * leverage / (contract_value * price)); reject if < 1.
       Market orders size at the live price, limit intents at their entry.
    4. Validate bracket ordering
    5. Market: set leverage, bracket around the live price, place
    6. Limit: reachability, min/max deviation, duplicate direction, register

    Placement is serialized and the open-trade count is re-read under the
    lock, so analysis and monitor passes cannot both slip under the cap.
    """

    def __init__(self,
                 trading_api: TradingAPI,
                 ledger: TradeLedger,
                 pending_store: PendingOrderStore,
                 sanitizer: Optional[RiskSanitizer] = None,
                 policy: Optional[ExecutionPolicy] = None,
                 notifier: Optional[Notifier] = None,
                 mode: str = "LIVE",
                 clock: Optional[Callable[[], datetime]] = None):
        self.trading_api = trading_api
        self.ledger = ledger
        self.pending_store = pending_store
        self.sanitizer = sanitizer or RiskSanitizer()
        self.policy = policy or ExecutionPolicy()
        self.notifier = notifier
        self.mode = mode.upper()
        self._clock = clock or utcnow
        self._lock = threading.Lock()

        logger.info(f"Initialized ExecutionDecider (mode={self.mode})")

    def execute(self,
                recommendation: Recommendation,
                settings: Settings,
                current_price: float,
                open_trade_count: int) -> ExecutionResult:
        with self._lock:
            # Callers read the count before waiting on the lock; the ledger is authoritative
            open_trade_count = max(open_trade_count, self.ledger.count_open_trades())
            return self._execute(recommendation, settings, current_price, open_trade_count)

    def _execute(self, rec: Recommendation, settings: Settings,
                 current_price: float, open_trade_count: int) -> ExecutionResult:
        direction = rec.side
        if direction is Direction.NONE:
            return self._reject("No direction")
        if not is_valid_price(current_price):
            return self._reject(f"Invalid current price: {current_price}")

        # 1. Concurrency limit
        if open_trade_count >= settings.max_concurrent_trades:
            return self._reject(
                f"Max concurrent trades reached ({open_trade_count}/{settings.max_concurrent_trades})"
            )

        # 2. Collateral
        balances = self.trading_api.get_wallet_balance()
        collateral = select_collateral(balances, self.policy.collateral_priority)
        available = available_amount(collateral)
        if available <= 0:
            return self._reject("No available collateral")
        allocated = available * settings.balance_allocation_pct / 100.0
        if allocated <= 0:
            return self._reject("Allocated balance is non-positive")

        # 3. Sizing
        product = self._find_product(rec.symbol)
        if product is None:
            return self._reject(f"Product not found: {rec.symbol}")
        contract_value = self._contract_value(product)
        entry = rec.entry_price
        if not is_valid_price(entry):
            return self._reject(f"Invalid entry price: {entry}")
        sizing_price = entry if rec.strategy is ExecutionStrategy.LIMIT else current_price
        quantity = self._size(allocated, settings.leverage, contract_value, sizing_price)
        if quantity < 1:
            return self._reject(
                f"Position size below one contract (allocated={allocated:.2f}, "
                f"leverage={settings.leverage}x, contract_value={contract_value})"
            )

        # 4. Ordering
        if not bracket_is_ordered(direction, entry, rec.stop_loss, rec.take_profit):
            return self._reject(
                f"Bracket ordering violated for {direction.value}: "
                f"entry={entry} stop={rec.stop_loss} target={rec.take_profit}"
            )

        logger.info(
            f"Sizing {rec.symbol}: collateral={available:.2f} alloc={settings.balance_allocation_pct:.0f}% "
            f"lev={settings.leverage}x cv={contract_value} -> {quantity} contracts"
        )

        if rec.strategy is ExecutionStrategy.LIMIT:
            return self._handle_limit(rec, settings, current_price, quantity, contract_value, allocated)
        return self._place_market(rec, settings, current_price, quantity, contract_value)

    def _handle_limit(self, rec: Recommendation, settings: Settings, current_price: float,
                      quantity: int, contract_value: float, allocated: float) -> ExecutionResult:
        direction = rec.side
        entry = rec.entry_price

        if direction is Direction.LONG and entry >= current_price:
            return self._reject(f"Long limit {entry:.2f} not below market {current_price:.2f}")
        if direction is Direction.SHORT and entry <= current_price:
            return self._reject(f"Short limit {entry:.2f} not above market {current_price:.2f}")

        deviation_pct = abs(entry - current_price) / current_price * 100.0
        if deviation_pct < self.policy.min_limit_deviation_pct:
            logger.info(
                f"Limit deviation {deviation_pct:.3f}% below {self.policy.min_limit_deviation_pct}%, "
                f"executing at market"
            )
            quantity = self._size(allocated, settings.leverage, contract_value, current_price)
            if quantity < 1:
                return self._reject(f"Position size below one contract at market {current_price:.2f}")
            return self._place_market(rec, settings, current_price, quantity, contract_value)
        if deviation_pct > self.policy.max_limit_deviation_pct:
            return self._reject(
                f"Limit deviation {deviation_pct:.3f}% exceeds {self.policy.max_limit_deviation_pct}%"
            )

        if self.pending_store.has_active(rec.symbol, direction.value):
            return self._reject(f"Pending {direction.value} limit already active for {rec.symbol}")

        order_id = self.pending_store.add(rec, current_price)
        if order_id is None:
            return self._reject(f"Pending {direction.value} limit already active for {rec.symbol}")
        return ExecutionResult(pending_order_id=order_id)

    def _place_market(self, rec: Recommendation, settings: Settings, current_price: float,
                      quantity: int, contract_value: float) -> ExecutionResult:
        direction = rec.side
        stop, target = self.sanitizer.compute_bracket(direction, current_price)
        if not bracket_is_ordered(direction, current_price, stop, target):
            return self._reject(f"Bracket around market {current_price} is not ordered")

        if self.mode == "DRY_RUN":
            logger.info(
                f"DRY_RUN: Would place {direction.value.upper()} {quantity}x {rec.symbol} "
                f"@ market ~{current_price:.2f} SL={stop:.2f} TP={target:.2f} lev={settings.leverage}x"
            )
            return ExecutionResult(rejection_reason="dry_run", dry_run=True)

        self.trading_api.set_leverage(settings.leverage)
        order_ref = self.trading_api.place_market_order_with_bracket(
            quantity, direction.order_side, stop, target
        )
        if not order_ref:
            logger.error(f"Exchange returned no order reference for {rec.symbol}; no trade recorded")
            return ExecutionResult(rejection_reason="Exchange did not confirm order")

        trade = Trade(
            symbol=rec.symbol,
            direction=direction.value,
            entry_price=float(current_price),
            quantity=quantity,
            leverage=settings.leverage,
            stop_loss=stop,
            take_profit=target,
            confidence=rec.confidence,
            contract_value=contract_value,
            trading_mode=settings.trading_mode,
            reasoning=rec.rationale,
            order_ref=str(order_ref),
            entry_time=self._clock(),
        )
        self.ledger.create_trade(trade)
        logger.info(
            f"🚀 Placed {direction.value.upper()} {quantity}x {rec.symbol} @ ~{current_price:.2f} "
            f"SL={stop:.2f} TP={target:.2f} (order={order_ref})"
        )
        self._notify(NotificationEvent(NotificationKind.TRADE_EXECUTED, trade.to_dict()))
        return ExecutionResult(trade=trade)

    def _find_product(self, symbol: str) -> Optional[Dict[str, Any]]:
        products: List[Dict[str, Any]] = self.trading_api.get_products() or []
        for product in products:
            if product.get("symbol") == symbol:
                return product
        return None

    @staticmethod
    def _size(allocated: float, leverage: int, contract_value: float, price: float) -> int:
        return math.floor(allocated * leverage / (contract_value * price))

    @staticmethod
    def _contract_value(product: Dict[str, Any]) -> float:
        try:
            value = float(product.get("contract_value") or 1.0)
        except (TypeError, ValueError):
            return 1.0
        return value if math.isfinite(value) and value > 0 else 1.0

    def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"Notification {event.kind.value} failed: {e}")

    @staticmethod
    def _reject(reason: str) -> ExecutionResult:
        logger.info(f"Execution rejected: {reason}")
        return ExecutionResult(rejection_reason=reason)
