"""
Snapshot Builder - Construct market context for the recommendation service.

Builds structured snapshots containing:
- Live price and the last primary-timeframe candle
- Multi-timeframe candle history (5m/15m/1h/1d by default)
- Orderbook top levels
- Volatility of the primary timeframe (std of close-to-close returns, %)
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from core.exceptions import CriticalDataUnavailable
from core.interfaces import MarketDataProvider
from core.models import Candle, TradingMode, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEFRAMES = ("5m", "15m", "1h", "1d")

_TIMEFRAME_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}


def timeframe_seconds(timeframe: str) -> int:
    try:
        return _TIMEFRAME_SECONDS[timeframe]
    except KeyError:
        raise ValueError(f"Unsupported timeframe: {timeframe}")


def compute_volatility(candles: Sequence[Candle]) -> float:
    """Population std of close-to-close returns, in percent. 0.0 with <2 candles."""
    closes = [c.close for c in candles if c.close > 0]
    if len(closes) < 2:
        return 0.0
    returns = [(closes[i] - closes[i - 1]) / closes[i - 1] for i in range(1, len(closes))]
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    return math.sqrt(variance) * 100


def build_market_snapshot(
    market_data: MarketDataProvider,
    mode: str,
    now: Optional[datetime] = None,
    timeframes: Sequence[str] = DEFAULT_TIMEFRAMES,
    candle_count: int = 150,
    orderbook_depth: int = 10,
    symbol: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build the market snapshot for one analysis pass.

    The primary timeframe (from the trading mode) is mandatory; any other
    timeframe, the orderbook, or the live price may fail and is logged.

    Raises:
        CriticalDataUnavailable: primary candles and live price both unavailable
    """
    now = now or utcnow()
    primary = TradingMode(mode).timeframe
    wanted = list(timeframes)
    if primary not in wanted:
        wanted.insert(0, primary)

    try:
        current_price: Optional[float] = market_data.get_current_price()
    except Exception as e:
        logger.warning(f"Live price unavailable: {e}")
        current_price = None

    series: dict[str, list[Candle]] = {}
    for tf in wanted:
        start = now - timedelta(seconds=timeframe_seconds(tf) * candle_count)
        try:
            series[tf] = market_data.get_ohlcv(tf, start, now)[-candle_count:]
        except Exception as e:
            if tf == primary:
                raise CriticalDataUnavailable(f"Primary timeframe {tf} candles unavailable: {e}") from e
            logger.warning(f"Candles for {tf} unavailable: {e}")
            series[tf] = []

    primary_candles = series[primary]
    last_candle = primary_candles[-1] if primary_candles else None
    if current_price is None and last_candle is None:
        raise CriticalDataUnavailable("No live price and no primary candles")

    try:
        orderbook = market_data.get_orderbook(orderbook_depth)
    except Exception as e:
        logger.warning(f"Orderbook unavailable: {e}")
        orderbook = {"buy": [], "sell": []}

    return {
        "timestamp": now.isoformat(),
        "symbol": symbol or getattr(market_data, "symbol", None),
        "trading_mode": mode,
        "primary_timeframe": primary,
        "current_price": current_price,
        "last_candle": last_candle,
        "timeframes": {tf: [c.to_dict() for c in candles] for tf, candles in series.items()},
        "orderbook": orderbook,
        "volatility_pct": compute_volatility(primary_candles),
    }
