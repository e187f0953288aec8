"""
perp-agent Core: Domain Models

Records shared by the engine, the collaborators, and storage.

Enum values are stored as plain strings on the dataclasses so records
serialize straight into SQLite/JSON without conversion.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid
import logging

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Direction(Enum):
    """Trade direction"""
    LONG = "long"
    SHORT = "short"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "Direction":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        aliases = {"buy": "long", "sell": "short", "hold": "none"}
        normalized = aliases.get(normalized, normalized)
        for member in cls:
            if member.value == normalized:
                return member
        return cls.NONE

    @property
    def sign(self) -> int:
        if self is Direction.LONG:
            return 1
        if self is Direction.SHORT:
            return -1
        return 0

    @property
    def order_side(self) -> str:
        """Exchange side used to open a position in this direction"""
        if self is Direction.NONE:
            raise ValueError("No order side for direction 'none'")
        return "buy" if self is Direction.LONG else "sell"


class ExecutionStrategy(Enum):
    MARKET = "market"
    LIMIT = "limit"

    @classmethod
    def parse(cls, value: Any) -> "ExecutionStrategy":
        normalized = str(value or "").strip().lower()
        return cls.LIMIT if normalized == cls.LIMIT.value else cls.MARKET


class TradeStatus(Enum):
    """Trade lifecycle states"""
    OPEN = "open"
    TP_HIT = "tp_hit"
    SL_HIT = "sl_hit"
    CLOSED = "closed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TradeStatus.TP_HIT.value,
    TradeStatus.SL_HIT.value,
    TradeStatus.CLOSED.value,
    TradeStatus.CANCELLED.value,
})


class TradingMode(Enum):
    """Trading modes, each bound to a primary candle timeframe and analysis cadence"""
    SCALPING = "scalping"
    INTRADAY = "intraday"
    SWING = "swing"
    LONGTERM = "longterm"

    @property
    def timeframe(self) -> str:
        return MODE_SCHEDULE[self][0]

    @property
    def interval_minutes(self) -> int:
        return MODE_SCHEDULE[self][1]


# mode -> (primary timeframe, analysis interval minutes)
MODE_SCHEDULE = {
    TradingMode.SCALPING: ("5m", 5),
    TradingMode.INTRADAY: ("15m", 15),
    TradingMode.SWING: ("1h", 60),
    TradingMode.LONGTERM: ("1d", 1440),
}


class OrderState(Enum):
    """Normalized exchange order state"""
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class NotificationKind(Enum):
    TRADE_EXECUTED = "trade_executed"
    TRADE_CLOSED = "trade_closed"
    DAILY_REPORT = "daily_report"


@dataclass
class Settings:
    """Singleton agent settings (created with defaults on first read)"""
    leverage: int = 50
    balance_allocation_pct: float = 100.0
    max_concurrent_trades: int = 1
    trading_mode: str = TradingMode.SCALPING.value
    auto_trading_enabled: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def mode(self) -> TradingMode:
        return TradingMode(self.trading_mode)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leverage": self.leverage,
            "balance_allocation_pct": self.balance_allocation_pct,
            "max_concurrent_trades": self.max_concurrent_trades,
            "trading_mode": self.trading_mode,
            "auto_trading_enabled": self.auto_trading_enabled,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Candle:
    """OHLCV candle (time is epoch seconds)"""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass
class Recommendation:
    """
    Directional trading recommendation.

    Produced once per analysis pass by the recommendation service, then
    clamped by the RiskSanitizer before it may reach execution.
    """
    symbol: str
    direction: str = Direction.NONE.value
    entry_price: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    confidence: float = 0.0
    rationale: str = ""
    execution_strategy: str = ExecutionStrategy.MARKET.value
    strategy_reason: str = ""

    @classmethod
    def no_trade(cls, symbol: str, reason: str = "") -> "Recommendation":
        return cls(symbol=symbol, direction=Direction.NONE.value, confidence=0.0, rationale=reason)

    @property
    def side(self) -> Direction:
        return Direction.parse(self.direction)

    @property
    def strategy(self) -> ExecutionStrategy:
        return ExecutionStrategy.parse(self.execution_strategy)

    def is_actionable(self) -> bool:
        return self.side is not Direction.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "execution_strategy": self.execution_strategy,
            "strategy_reason": self.strategy_reason,
        }


@dataclass
class PendingLimitOrder:
    """Unfilled limit intent held by the PendingOrderStore"""
    id: str
    recommendation: Recommendation
    market_price_at_creation: float
    created_at: datetime
    expires_at: datetime

    @property
    def symbol(self) -> str:
        return self.recommendation.symbol

    @property
    def direction(self) -> str:
        return self.recommendation.direction

    @property
    def target_entry(self) -> float:
        return self.recommendation.entry_price

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction,
            "target_entry": self.target_entry,
            "stop_loss": self.recommendation.stop_loss,
            "take_profit": self.recommendation.take_profit,
            "market_price_at_creation": self.market_price_at_creation,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class Trade:
    """
    Persisted trade record.

    Created only after the exchange confirms placement. Exit fields are
    written once, when the trade reaches a terminal status.
    """
    symbol: str
    direction: str
    entry_price: float
    quantity: int
    leverage: int
    stop_loss: float
    take_profit: float
    confidence: float = 0.0
    contract_value: float = 1.0
    trading_mode: str = TradingMode.SCALPING.value
    reasoning: str = ""
    order_ref: Optional[str] = None
    status: str = TradeStatus.OPEN.value
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    entry_time: datetime = field(default_factory=utcnow)
    exit_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None

    @property
    def sign(self) -> int:
        return Direction.parse(self.direction).sign

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN.value

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.entry_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "confidence": self.confidence,
            "contract_value": self.contract_value,
            "trading_mode": self.trading_mode,
            "reasoning": self.reasoning,
            "order_ref": self.order_ref,
            "status": self.status,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "pnl_pct": self.pnl_pct,
        }


@dataclass
class AnalysisRecord:
    """Audit record of one recommendation"""
    trading_mode: str
    symbol: str
    direction: str
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    rationale: str = ""
    execution_strategy: str = ExecutionStrategy.MARKET.value
    current_price: Optional[float] = None
    volatility_pct: Optional[float] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_recommendation(
        cls,
        recommendation: Recommendation,
        trading_mode: str,
        current_price: Optional[float] = None,
        volatility_pct: Optional[float] = None,
    ) -> "AnalysisRecord":
        return cls(
            trading_mode=trading_mode,
            symbol=recommendation.symbol,
            direction=recommendation.direction,
            entry_price=recommendation.entry_price,
            stop_loss=recommendation.stop_loss,
            take_profit=recommendation.take_profit,
            confidence=recommendation.confidence,
            rationale=recommendation.rationale,
            execution_strategy=recommendation.execution_strategy,
            current_price=current_price,
            volatility_pct=volatility_pct,
        )


@dataclass
class DailyPerformance:
    """
    Per-day (UTC) aggregate of closed trades.

    Invariants: total_trades == winning_trades + losing_trades and
    win_rate == winning_trades / total_trades * 100. A trade with
    PnL <= 0 counts as a loss.
    """
    date: str
    total_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    best_asset: Optional[str] = None
    largest_win: float = 0.0
    worst_asset: Optional[str] = None
    largest_loss: float = 0.0
    trading_mode: Optional[str] = None

    def record(self, symbol: str, pnl: float) -> None:
        """Roll one closed trade's realized PnL into the aggregate"""
        self.total_pnl += pnl
        self.total_trades += 1
        if pnl > 0:
            self.winning_trades += 1
            if self.best_asset is None or pnl > self.largest_win:
                self.largest_win = pnl
                self.best_asset = symbol
        else:
            self.losing_trades += 1
            if self.worst_asset is None or pnl < self.largest_loss:
                self.largest_loss = pnl
                self.worst_asset = symbol
        self.win_rate = (self.winning_trades / self.total_trades) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "total_pnl": self.total_pnl,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "best_asset": self.best_asset,
            "largest_win": self.largest_win,
            "worst_asset": self.worst_asset,
            "largest_loss": self.largest_loss,
            "trading_mode": self.trading_mode,
        }


@dataclass
class OrderStatusReport:
    """Exchange order status normalized for reconciliation"""
    state: str
    filled_qty: float = 0.0
    avg_fill_price: Optional[float] = None


@dataclass
class NotificationEvent:
    kind: NotificationKind
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
