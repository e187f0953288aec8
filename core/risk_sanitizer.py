"""
perp-agent Core: Risk Sanitizer

Clamps an untrusted recommendation to hard numeric bounds before it may
reach execution. Upstream recommendation services are not trusted for
absolute price levels: entry is anchored to the live price and the
bracket is always recomputed from fixed percentages.

Pure and deterministic. Same inputs always give the same output.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple
import logging
import math

from core.models import Candle, Direction, ExecutionStrategy, Recommendation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SanitizerPolicy:
    """Sanitizer policy constants (percent values are in percent, not fractions)"""
    min_confidence: float = 70.0
    max_entry_deviation_pct: float = 0.5
    entry_offset_pct: float = 0.15
    stop_loss_pct: float = 0.5
    reward_multiple: float = 2.0
    min_risk_reward: float = 1.5
    max_candle_divergence_pct: float = 2.0
    price_precision: int = 2

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "SanitizerPolicy":
        raw_config = raw_config or {}
        defaults = cls()
        return cls(
            min_confidence=float(raw_config.get("min_confidence", defaults.min_confidence)),
            max_entry_deviation_pct=float(raw_config.get("max_entry_deviation_pct", defaults.max_entry_deviation_pct)),
            entry_offset_pct=float(raw_config.get("entry_offset_pct", defaults.entry_offset_pct)),
            stop_loss_pct=float(raw_config.get("stop_loss_pct", defaults.stop_loss_pct)),
            reward_multiple=float(raw_config.get("reward_multiple", defaults.reward_multiple)),
            min_risk_reward=float(raw_config.get("min_risk_reward", defaults.min_risk_reward)),
            max_candle_divergence_pct=float(
                raw_config.get("max_candle_divergence_pct", defaults.max_candle_divergence_pct)
            ),
            price_precision=int(raw_config.get("price_precision", defaults.price_precision)),
        )


def is_valid_price(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def bracket_is_ordered(direction: Direction, entry: float, stop: float, target: float) -> bool:
    """long: stop < entry < target; short: target < entry < stop"""
    if not all(is_valid_price(p) for p in (entry, stop, target)):
        return False
    if direction is Direction.LONG:
        return stop < entry < target
    if direction is Direction.SHORT:
        return target < entry < stop
    return False


def risk_reward(entry: float, stop: float, target: float) -> float:
    risk = abs(entry - stop)
    if risk <= 0:
        return 0.0
    return abs(target - entry) / risk


class RiskSanitizer:
    """
    Validate and clamp raw recommendations.

    Steps:
    1. Reject direction=none or confidence below threshold
    2. Pick a reference price (live price, else last candle close)
    3. Override entry near the live price when upstream deviates too far
    4. Recompute stop (fixed %) and target (reward multiple of risk)
    5. Enforce ordering, finiteness and minimum risk:reward
    """

    def __init__(self, policy: Optional[SanitizerPolicy] = None):
        self.policy = policy or SanitizerPolicy()

    def sanitize(self,
                 recommendation: Recommendation,
                 current_price: Optional[float],
                 last_candle: Optional[Candle] = None) -> Recommendation:
        """
        Return a sanitized copy of the recommendation, or the canonical
        no-trade value (direction=none, confidence=0).
        """
        policy = self.policy
        symbol = recommendation.symbol
        direction = recommendation.side

        if direction is Direction.NONE:
            return Recommendation.no_trade(symbol, "No direction")

        confidence = recommendation.confidence
        if not isinstance(confidence, (int, float)) or not math.isfinite(confidence):
            return Recommendation.no_trade(symbol, "Invalid confidence")
        if confidence < policy.min_confidence:
            logger.debug(f"Confidence {confidence:.0f} below threshold {policy.min_confidence:.0f}")
            return Recommendation.no_trade(symbol, f"Confidence {confidence:.0f} below threshold")

        reference = self.reference_price(current_price, last_candle)
        if reference is None:
            return Recommendation.no_trade(symbol, "No valid reference price")

        entry = recommendation.entry_price
        strategy = recommendation.strategy
        strategy_reason = recommendation.strategy_reason

        if is_valid_price(entry):
            deviation_pct = abs(entry - reference) / reference * 100.0
        else:
            deviation_pct = math.inf

        if deviation_pct > policy.max_entry_deviation_pct:
            offset = policy.entry_offset_pct / 100.0
            entry = reference * (1 + offset) if direction is Direction.LONG else reference * (1 - offset)
            strategy = ExecutionStrategy.MARKET
            strategy_reason = (
                f"Entry overridden: upstream deviation {deviation_pct:.2f}% exceeds "
                f"{policy.max_entry_deviation_pct:.2f}%"
            )
            logger.debug(strategy_reason)

        entry = self._round(entry)
        stop, target = self.compute_bracket(direction, entry)

        if not bracket_is_ordered(direction, entry, stop, target):
            return Recommendation.no_trade(symbol, "Bracket ordering violated")
        if risk_reward(entry, stop, target) < policy.min_risk_reward:
            return Recommendation.no_trade(symbol, "Risk:reward below minimum")

        return replace(
            recommendation,
            direction=direction.value,
            entry_price=entry,
            stop_loss=stop,
            take_profit=target,
            confidence=max(1.0, min(100.0, float(confidence))),
            execution_strategy=strategy.value,
            strategy_reason=strategy_reason,
        )

    def reference_price(self, current_price: Optional[float],
                        last_candle: Optional[Candle]) -> Optional[float]:
        """
        Live price, falling back to the last candle close.

        Returns None when neither is valid, or when both are valid but
        diverge by more than max_candle_divergence_pct (stale or bad tick).
        """
        candle_close = last_candle.close if last_candle is not None else None
        live_ok = is_valid_price(current_price)
        candle_ok = is_valid_price(candle_close)

        if live_ok and candle_ok:
            divergence_pct = abs(current_price - candle_close) / candle_close * 100.0
            if divergence_pct > self.policy.max_candle_divergence_pct:
                logger.warning(
                    f"Live price {current_price} diverges {divergence_pct:.2f}% from "
                    f"last close {candle_close}"
                )
                return None
            return float(current_price)
        if live_ok:
            return float(current_price)
        if candle_ok:
            return float(candle_close)
        return None

    def compute_bracket(self, direction: Direction, entry: float) -> Tuple[float, float]:
        """
        Stop at a fixed percentage from entry; target at reward_multiple x risk.

        Returns (stop_loss, take_profit), rounded to price precision.
        """
        direction = Direction.parse(direction)
        stop_frac = self.policy.stop_loss_pct / 100.0
        if direction is Direction.LONG:
            stop = self._round(entry * (1 - stop_frac))
            target = self._round(entry + self.policy.reward_multiple * (entry - stop))
        elif direction is Direction.SHORT:
            stop = self._round(entry * (1 + stop_frac))
            target = self._round(entry - self.policy.reward_multiple * (stop - entry))
        else:
            raise ValueError("Cannot compute bracket for direction 'none'")
        return stop, target

    def _round(self, price: float) -> float:
        if not math.isfinite(price):
            return price
        return round(price, self.policy.price_precision)
