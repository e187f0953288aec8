"""
perp-agent Core: Collaborator Interfaces

Contracts the engine consumes. Concrete implementations live in
core/exchange_delta.py, ai/recommender.py, infra/storage.py and
infra/notifications.py; tests substitute fakes.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from core.models import (
    AnalysisRecord,
    Candle,
    DailyPerformance,
    NotificationEvent,
    OrderStatusReport,
    Recommendation,
    Settings,
    Trade,
)


class MarketDataProvider(ABC):
    """Read-only market data for the configured symbol."""

    @abstractmethod
    def get_current_price(self) -> float:
        pass

    @abstractmethod
    def get_ohlcv(self, timeframe: str, start: datetime, end: datetime) -> List[Candle]:
        pass

    @abstractmethod
    def get_orderbook(self, depth: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        """Return {"buy": [{price, size}], "sell": [{price, size}]}"""
        pass


class TradingAPI(ABC):
    """Transactional exchange API for the configured symbol."""

    @abstractmethod
    def get_wallet_balance(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_products(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def set_leverage(self, leverage: int) -> None:
        pass

    @abstractmethod
    def place_market_order_with_bracket(self, quantity: int, side: str,
                                        stop_loss: float, take_profit: float) -> Optional[str]:
        """Place a market bracket order. Returns the exchange order reference."""
        pass

    @abstractmethod
    def place_limit_order_with_bracket(self, quantity: int, side: str, limit_price: float,
                                       stop_loss: float, take_profit: float) -> Optional[str]:
        pass

    @abstractmethod
    def get_order_status(self, order_ref: str) -> OrderStatusReport:
        pass

    @abstractmethod
    def get_positions(self) -> List[Dict[str, Any]]:
        """Return open positions as [{symbol, size}] with signed size"""
        pass

    @abstractmethod
    def cancel_order(self, order_ref: str) -> bool:
        pass

    def test_connection(self) -> bool:
        try:
            self.get_products()
            return True
        except Exception:
            return False


class RecommendationService(ABC):
    """Market-reasoning service. Must degrade to a no-trade recommendation on failure."""

    @abstractmethod
    def analyze(self, snapshot: Dict[str, Any], mode: str) -> Recommendation:
        pass


class Repository(ABC):
    """CRUD persistence for settings, trades, analyses and daily performance."""

    @abstractmethod
    def get_settings(self) -> Optional[Settings]:
        pass

    @abstractmethod
    def save_settings(self, settings: Settings) -> None:
        pass

    @abstractmethod
    def create_trade(self, trade: Trade) -> None:
        pass

    @abstractmethod
    def update_trade(self, trade: Trade) -> None:
        pass

    @abstractmethod
    def get_trade(self, trade_id: str) -> Optional[Trade]:
        pass

    @abstractmethod
    def get_open_trades(self) -> List[Trade]:
        pass

    @abstractmethod
    def get_trades(self, limit: int = 100) -> List[Trade]:
        """Most recent trades first"""
        pass

    @abstractmethod
    def save_analysis(self, record: AnalysisRecord) -> None:
        pass

    @abstractmethod
    def get_latest_analysis(self) -> Optional[AnalysisRecord]:
        pass

    @abstractmethod
    def get_daily_performance(self, date: str) -> Optional[DailyPerformance]:
        pass

    @abstractmethod
    def save_daily_performance(self, performance: DailyPerformance) -> None:
        pass

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes atomically. Implementations override this."""
        yield


class Notifier(ABC):
    """Fire-and-forget notification dispatch. Failures are logged, never raised."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        pass
