"""
Tests for RiskSanitizer

Covers:
- Entry override when the upstream entry strays from the live price
- Bracket recomputation (fixed stop %, 1:2 reward)
- Confidence threshold and clamping
- Reference price fallback and divergence rejection
- Randomized ordering / risk:reward / determinism checks
"""

import math
import random

import pytest

from core.models import Candle, Direction, Recommendation
from core.risk_sanitizer import (
    RiskSanitizer,
    SanitizerPolicy,
    bracket_is_ordered,
    is_valid_price,
    risk_reward,
)


def _rec(direction="long", entry=2740.0, confidence=80.0, strategy="limit", **kwargs):
    return Recommendation(
        symbol="ETHUSD",
        direction=direction,
        entry_price=entry,
        stop_loss=kwargs.pop("stop_loss", 1.0),
        take_profit=kwargs.pop("take_profit", 99999.0),
        confidence=confidence,
        execution_strategy=strategy,
        **kwargs,
    )


def _candle(close):
    return Candle(time=1_700_000_000, open=close, high=close, low=close, close=close)


class TestEntryOverride:
    def setup_method(self):
        self.sanitizer = RiskSanitizer()

    def test_far_upstream_entry_is_replaced_near_live_price(self):
        rec = _rec(entry=2805.05, stop_loss=2780.0, take_profit=2900.0)

        out = self.sanitizer.sanitize(rec, 2738.24)

        assert out.direction == "long"
        assert out.entry_price == pytest.approx(2742.35, abs=0.01)
        assert out.stop_loss == pytest.approx(2728.64, abs=0.02)
        # 1:2 reward on the recomputed risk
        assert out.take_profit == pytest.approx(2769.77, abs=0.02)
        assert out.execution_strategy == "market"
        assert "overridden" in out.strategy_reason

    def test_short_override_goes_below_live_price(self):
        rec = _rec(direction="short", entry=2600.0)

        out = self.sanitizer.sanitize(rec, 2738.24)

        assert out.entry_price == pytest.approx(2738.24 * 0.9985, abs=0.01)
        assert out.stop_loss > out.entry_price > out.take_profit
        assert out.execution_strategy == "market"

    def test_entry_within_deviation_is_kept(self):
        rec = _rec(entry=2735.0, strategy="limit")

        out = self.sanitizer.sanitize(rec, 2738.24)

        assert out.entry_price == 2735.0
        assert out.execution_strategy == "limit"

    def test_invalid_entry_is_treated_as_infinite_deviation(self):
        out = self.sanitizer.sanitize(_rec(entry=float("nan")), 2000.0)

        assert out.entry_price == pytest.approx(2003.0, abs=0.01)
        assert out.execution_strategy == "market"

    def test_upstream_bracket_is_always_replaced(self):
        rec = _rec(entry=2000.0, stop_loss=1500.0, take_profit=5000.0)

        out = self.sanitizer.sanitize(rec, 2000.0)

        assert out.stop_loss == pytest.approx(1990.0)
        assert out.take_profit == pytest.approx(2020.0)


class TestRejections:
    def setup_method(self):
        self.sanitizer = RiskSanitizer()

    def test_none_direction_yields_no_trade(self):
        out = self.sanitizer.sanitize(_rec(direction="none"), 2000.0)
        assert out.direction == "none"
        assert out.confidence == 0

    def test_low_confidence_rejected(self):
        out = self.sanitizer.sanitize(_rec(confidence=69.9), 2000.0)
        assert out.direction == "none"
        assert out.confidence == 0

    def test_threshold_confidence_accepted(self):
        out = self.sanitizer.sanitize(_rec(entry=2000.0, confidence=70), 2000.0)
        assert out.direction == "long"

    def test_nan_confidence_rejected(self):
        out = self.sanitizer.sanitize(_rec(confidence=float("nan")), 2000.0)
        assert out.direction == "none"

    def test_confidence_clamped_to_100(self):
        out = self.sanitizer.sanitize(_rec(entry=2000.0, confidence=250), 2000.0)
        assert out.confidence == 100

    def test_no_reference_price_rejected(self):
        out = self.sanitizer.sanitize(_rec(), None, None)
        assert out.direction == "none"

    def test_live_price_diverging_from_candle_rejected(self):
        out = self.sanitizer.sanitize(_rec(entry=2000.0), 2000.0, _candle(2100.0))
        assert out.direction == "none"

    def test_reward_multiple_below_minimum_rejected(self):
        sanitizer = RiskSanitizer(SanitizerPolicy(reward_multiple=1.0, min_risk_reward=1.5))
        out = sanitizer.sanitize(_rec(entry=2000.0), 2000.0)
        assert out.direction == "none"


class TestReferencePrice:
    def setup_method(self):
        self.sanitizer = RiskSanitizer()

    def test_prefers_live_price(self):
        assert self.sanitizer.reference_price(2000.0, _candle(2010.0)) == 2000.0

    def test_falls_back_to_candle_close(self):
        assert self.sanitizer.reference_price(None, _candle(2010.0)) == 2010.0
        assert self.sanitizer.reference_price(float("inf"), _candle(2010.0)) == 2010.0

    def test_none_when_nothing_valid(self):
        assert self.sanitizer.reference_price(0.0, None) is None

    def test_sanitize_uses_candle_when_live_missing(self):
        out = self.sanitizer.sanitize(_rec(entry=1500.0), None, _candle(2000.0))
        assert out.entry_price == pytest.approx(2003.0, abs=0.01)


class TestHelpers:
    def test_is_valid_price(self):
        assert is_valid_price(1.5)
        assert is_valid_price(3)
        assert not is_valid_price(0)
        assert not is_valid_price(-1.0)
        assert not is_valid_price(float("nan"))
        assert not is_valid_price(float("inf"))
        assert not is_valid_price(True)
        assert not is_valid_price("2000")
        assert not is_valid_price(None)

    def test_bracket_is_ordered(self):
        assert bracket_is_ordered(Direction.LONG, 100, 99, 102)
        assert not bracket_is_ordered(Direction.LONG, 100, 101, 102)
        assert bracket_is_ordered(Direction.SHORT, 100, 101, 98)
        assert not bracket_is_ordered(Direction.SHORT, 100, 99, 98)
        assert not bracket_is_ordered(Direction.NONE, 100, 99, 102)

    def test_risk_reward(self):
        assert risk_reward(100, 99, 102) == pytest.approx(2.0)
        assert risk_reward(100, 100, 102) == 0.0

    def test_compute_bracket_none_raises(self):
        with pytest.raises(ValueError):
            RiskSanitizer().compute_bracket(Direction.NONE, 100.0)

    def test_policy_from_config(self):
        policy = SanitizerPolicy.from_config({"min_confidence": 60, "stop_loss_pct": 1.0})
        assert policy.min_confidence == 60
        assert policy.stop_loss_pct == 1.0
        assert policy.reward_multiple == 2.0


class TestRandomizedProperties:
    """Seeded random sweep over directions, prices and upstream entries."""

    def test_output_is_no_trade_or_ordered_with_min_rr(self):
        sanitizer = RiskSanitizer()
        rng = random.Random(1234)

        for _ in range(500):
            price = rng.uniform(100, 100_000)
            direction = rng.choice(["long", "short", "none", "buy", "sell"])
            entry = price * rng.uniform(0.9, 1.1) if rng.random() > 0.1 else rng.choice([0.0, -5.0, float("nan")])
            confidence = rng.uniform(0, 120)
            rec = _rec(direction=direction, entry=entry, confidence=confidence,
                       strategy=rng.choice(["market", "limit"]))

            out = sanitizer.sanitize(rec, price)

            if out.direction == "none":
                assert out.confidence == 0
                continue

            side = Direction(out.direction)
            assert bracket_is_ordered(side, out.entry_price, out.stop_loss, out.take_profit)
            assert risk_reward(out.entry_price, out.stop_loss, out.take_profit) >= 1.5
            assert all(math.isfinite(p) for p in (out.entry_price, out.stop_loss, out.take_profit))
            # Allow one tick of rounding on top of the deviation bound
            assert abs(out.entry_price - price) <= price * 0.005 + 0.005 + 1e-9
            assert 70 <= out.confidence <= 100

    def test_deterministic(self):
        sanitizer = RiskSanitizer()
        rng = random.Random(99)

        for _ in range(100):
            price = rng.uniform(500, 5000)
            rec = _rec(direction=rng.choice(["long", "short"]), entry=price * rng.uniform(0.98, 1.02),
                       confidence=rng.uniform(70, 100))
            candle = _candle(price * rng.uniform(0.99, 1.01))

            assert sanitizer.sanitize(rec, price, candle) == sanitizer.sanitize(rec, price, candle)
