"""
Tests for build_market_snapshot

Primary timeframe candles are mandatory; every other input may fail
and degrade to an empty value.
"""

import math

import pytest

from ai.snapshot_builder import build_market_snapshot, compute_volatility, timeframe_seconds
from core.exceptions import CriticalDataUnavailable
from tests.helpers import T0, FakeExchange, make_candles


@pytest.fixture
def market():
    exchange = FakeExchange(price=2700.0)
    exchange.candles = {
        "5m": make_candles([2690.0, 2700.0, 2695.0]),
        "15m": make_candles([2680.0, 2700.0], step=900),
        "1h": make_candles([2650.0], step=3600),
        "1d": make_candles([2600.0], step=86400),
    }
    return exchange


class TestBuildMarketSnapshot:
    def test_full_snapshot(self, market):
        snapshot = build_market_snapshot(market, "scalping", now=T0)

        assert snapshot["current_price"] == 2700.0
        assert snapshot["primary_timeframe"] == "5m"
        assert snapshot["symbol"] == "ETHUSD"
        assert snapshot["last_candle"].close == 2695.0
        assert set(snapshot["timeframes"]) == {"5m", "15m", "1h", "1d"}
        assert snapshot["timeframes"]["15m"][1]["close"] == 2700.0
        assert snapshot["orderbook"]["buy"][0]["price"] == 2699.5
        assert snapshot["timestamp"] == T0.isoformat()

    def test_primary_follows_mode(self, market):
        snapshot = build_market_snapshot(market, "swing", now=T0, timeframes=("5m",))

        assert snapshot["primary_timeframe"] == "1h"
        assert list(snapshot["timeframes"]) == ["1h", "5m"]
        assert snapshot["last_candle"].close == 2650.0

    def test_primary_failure_is_critical(self, market):
        market.candle_errors["5m"] = RuntimeError("candles 503")

        with pytest.raises(CriticalDataUnavailable):
            build_market_snapshot(market, "scalping", now=T0)

    def test_secondary_failure_degrades(self, market):
        market.candle_errors["1d"] = RuntimeError("candles 503")

        snapshot = build_market_snapshot(market, "scalping", now=T0)

        assert snapshot["timeframes"]["1d"] == []
        assert len(snapshot["timeframes"]["5m"]) == 3

    def test_price_failure_keeps_candles(self, market):
        market.price_error = RuntimeError("ticker timeout")

        snapshot = build_market_snapshot(market, "scalping", now=T0)

        assert snapshot["current_price"] is None
        assert snapshot["last_candle"].close == 2695.0

    def test_no_price_and_no_candles_is_critical(self, market):
        market.price_error = RuntimeError("ticker timeout")
        market.candles["5m"] = []

        with pytest.raises(CriticalDataUnavailable):
            build_market_snapshot(market, "scalping", now=T0)

    def test_orderbook_failure_degrades(self, market):
        def broken(depth=10):
            raise RuntimeError("l2 down")

        market.get_orderbook = broken

        snapshot = build_market_snapshot(market, "scalping", now=T0)

        assert snapshot["orderbook"] == {"buy": [], "sell": []}

    def test_candle_count_trims_history(self, market):
        market.candles["5m"] = make_candles([2700.0 + i for i in range(10)])

        snapshot = build_market_snapshot(market, "scalping", now=T0, candle_count=4)

        assert len(snapshot["timeframes"]["5m"]) == 4
        assert snapshot["last_candle"].close == 2709.0


class TestVolatility:
    def test_too_few_candles(self):
        assert compute_volatility([]) == 0.0
        assert compute_volatility(make_candles([2700.0])) == 0.0

    def test_flat_series_is_zero(self):
        assert compute_volatility(make_candles([100.0, 100.0, 100.0])) == 0.0

    def test_population_std_of_returns(self):
        # returns +10% and -10%: mean 0, population std 0.1
        vol = compute_volatility(make_candles([100.0, 110.0, 99.0]))
        assert vol == pytest.approx(10.0)

    def test_timeframe_seconds(self):
        assert timeframe_seconds("15m") == 900
        assert math.isclose(timeframe_seconds("1d") / timeframe_seconds("1h"), 24)
        with pytest.raises(ValueError):
            timeframe_seconds("2w")
