"""
Recommendation Service - LLM-backed directional calls.

Wraps a ModelClient, validates the response shape, and degrades to a
no-trade recommendation on any failure. The RiskSanitizer still has the
final word on every numeric field.
"""

import logging
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.interfaces import RecommendationService
from core.models import Direction, ExecutionStrategy, Recommendation
from .model_client import ModelClient

log = logging.getLogger(__name__)


class RecommendationResponse(BaseModel):
    """Expected JSON shape of a model response."""
    model_config = ConfigDict(extra="ignore")

    direction: str = Direction.NONE.value
    entry_price: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0
    confidence: float = Field(default=0.0)
    pattern_explanation: str = ""
    multi_timeframe_reasoning: str = ""
    execution_strategy: str = ExecutionStrategy.MARKET.value
    strategy_reason: str = ""

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, v: Any) -> str:
        return Direction.parse(v).value

    @field_validator("execution_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, v: Any) -> str:
        return ExecutionStrategy.parse(v).value

    @field_validator("entry_price", "stop_loss", "take_profit", "confidence", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return 0.0 if v is None else v

    @field_validator("pattern_explanation", "multi_timeframe_reasoning", "strategy_reason", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else str(v)


class LLMRecommendationService(RecommendationService):
    """
    Produce one Recommendation per analysis pass.

    Core principles:
    - Never raises: any model/parse error becomes a no-trade recommendation
    - Output is unsanitized; callers must pass it through the RiskSanitizer
    """

    def __init__(self, client: ModelClient, symbol: str, timeout_s: float = 30.0):
        self.client = client
        self.symbol = symbol
        self.timeout_s = timeout_s

    def analyze(self, snapshot: Dict[str, Any], mode: str) -> Recommendation:
        request = dict(snapshot)
        request.setdefault("symbol", self.symbol)
        request["trading_mode"] = mode
        request.pop("last_candle", None)  # Candle objects are not prompt material

        start = time.perf_counter()
        try:
            raw = self.client.call(request, timeout=self.timeout_s)
        except Exception as e:
            log.warning(f"Recommendation call failed: {e}")
            return Recommendation.no_trade(self.symbol, f"Model error: {e}")

        try:
            parsed = RecommendationResponse.model_validate(raw)
        except ValidationError as e:
            log.warning(f"Recommendation response invalid: {e.error_count()} errors")
            return Recommendation.no_trade(self.symbol, "Model response failed validation")

        latency_ms = (time.perf_counter() - start) * 1000
        log.info(
            f"Recommendation in {latency_ms:.0f}ms: {parsed.direction} "
            f"entry={parsed.entry_price} conf={parsed.confidence}"
        )
        return self._to_recommendation(parsed)

    def _to_recommendation(self, parsed: RecommendationResponse) -> Recommendation:
        rationale_parts = [p for p in (parsed.pattern_explanation, parsed.multi_timeframe_reasoning) if p]
        return Recommendation(
            symbol=self.symbol,
            direction=parsed.direction,
            entry_price=parsed.entry_price,
            stop_loss=parsed.stop_loss,
            take_profit=parsed.take_profit,
            confidence=parsed.confidence,
            rationale=" | ".join(rationale_parts),
            execution_strategy=parsed.execution_strategy,
            strategy_reason=parsed.strategy_reason,
        )


class MockRecommendationService(RecommendationService):
    """Returns a fixed recommendation (or no trade). Used in tests and dry runs."""

    def __init__(self, recommendation: Optional[Recommendation] = None, symbol: str = "ETHUSD"):
        self.recommendation = recommendation
        self.symbol = symbol
        self.calls = 0

    def analyze(self, snapshot: Dict[str, Any], mode: str) -> Recommendation:
        self.calls += 1
        if self.recommendation is None:
            return Recommendation.no_trade(self.symbol, "Mock service: no trade")
        return self.recommendation


__all__ = ["LLMRecommendationService", "MockRecommendationService", "RecommendationResponse"]
