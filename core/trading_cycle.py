"""
Analysis Pass - Recommendation to Execution Pipeline

Implements the analysis cadence:
1. Settings gate (auto-trading enabled)
2. Market snapshot (multi-timeframe candles, orderbook, volatility)
3. Recommendation service (degrades to no trade)
4. Persist analysis record for audit
5. RiskSanitizer
6. ExecutionDecider (only against a live price)
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import logging

from core.concurrency import ANALYSIS, ConcurrencyGuard
from core.execution import ExecutionDecider, ExecutionResult
from core.interfaces import RecommendationService, Repository
from core.models import AnalysisRecord, Recommendation
from core.risk_sanitizer import RiskSanitizer, is_valid_price
from core.settings import SettingsService
from core.trade_ledger import TradeLedger

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Result of one analysis pass"""
    success: bool
    recommendation: Optional[Recommendation] = None
    sanitized: Optional[Recommendation] = None
    execution: Optional[ExecutionResult] = None
    no_trade_reason: Optional[str] = None
    error: Optional[str] = None


class AnalysisPass:
    """
    One analysis pass from market snapshot to execution decision.

    snapshot_builder is a callable (trading_mode) -> snapshot dict that
    carries at least "current_price" and "last_candle".
    """

    def __init__(self,
                 snapshot_builder: Callable[[str], Dict[str, Any]],
                 recommender: RecommendationService,
                 sanitizer: RiskSanitizer,
                 decider: ExecutionDecider,
                 ledger: TradeLedger,
                 settings_service: SettingsService,
                 repository: Repository,
                 symbol: str,
                 guard: Optional[ConcurrencyGuard] = None):
        self.snapshot_builder = snapshot_builder
        self.recommender = recommender
        self.sanitizer = sanitizer
        self.decider = decider
        self.ledger = ledger
        self.settings_service = settings_service
        self.repository = repository
        self.symbol = symbol
        self.guard = guard or ConcurrencyGuard()

    def run(self) -> Optional[CycleResult]:
        """Run one pass under the analysis latch. Returns None if skipped."""
        ran, result = self.guard.run(ANALYSIS, self.execute_cycle)
        return result if ran else None

    def execute_cycle(self) -> CycleResult:
        settings = self.settings_service.get_settings()
        if not settings.auto_trading_enabled:
            return CycleResult(success=True, no_trade_reason="auto_trading_disabled")

        mode = settings.trading_mode
        logger.info(f"Analysis pass: mode={mode} timeframe={settings.mode.timeframe}")

        # Step 1: Market snapshot
        try:
            snapshot = self.snapshot_builder(mode)
        except Exception as e:
            logger.error(f"Market snapshot failed: {e}")
            return CycleResult(success=False, no_trade_reason="market_data_unavailable", error=str(e))

        current_price = snapshot.get("current_price")
        last_candle = snapshot.get("last_candle")

        # Step 2: Recommendation (service must degrade, but guard anyway)
        try:
            recommendation = self.recommender.analyze(snapshot, mode)
        except Exception as e:
            logger.error(f"Recommendation service failed: {e}")
            recommendation = Recommendation.no_trade(self.symbol, f"Recommendation failed: {e}")

        logger.info(
            f"Recommendation: {recommendation.direction.upper()} {recommendation.symbol} "
            f"entry={recommendation.entry_price} conf={recommendation.confidence} "
            f"strategy={recommendation.execution_strategy}"
        )

        # Step 3: Audit record
        try:
            self.repository.save_analysis(AnalysisRecord.from_recommendation(
                recommendation,
                trading_mode=mode,
                current_price=current_price,
                volatility_pct=snapshot.get("volatility_pct"),
            ))
        except Exception as e:
            logger.warning(f"Failed to persist analysis: {e}")

        # Step 4: Sanitize
        sanitized = self.sanitizer.sanitize(recommendation, current_price, last_candle)
        if not sanitized.is_actionable():
            logger.info(f"NO_TRADE: {sanitized.rationale or 'sanitizer rejected'}")
            return CycleResult(
                success=True,
                recommendation=recommendation,
                sanitized=sanitized,
                no_trade_reason=sanitized.rationale or "sanitizer_rejected",
            )

        # Step 5: Execute, but never bracket an order around a candle close
        if not is_valid_price(current_price):
            logger.warning(
                f"NO_TRADE: no live price (candle close {last_candle.close if last_candle else None}); "
                f"not placing against a stale reference"
            )
            return CycleResult(
                success=True,
                recommendation=recommendation,
                sanitized=sanitized,
                no_trade_reason="no_live_price",
            )
        reference_price = self.sanitizer.reference_price(current_price, last_candle)
        try:
            open_count = self.ledger.count_open_trades()
            execution = self.decider.execute(sanitized, settings, reference_price, open_count)
        except Exception as e:
            logger.error(f"Execution failed: {e}", exc_info=True)
            return CycleResult(
                success=False,
                recommendation=recommendation,
                sanitized=sanitized,
                no_trade_reason="execution_failed",
                error=str(e),
            )

        return CycleResult(
            success=True,
            recommendation=recommendation,
            sanitized=sanitized,
            execution=execution,
            no_trade_reason=None if execution.success else execution.rejection_reason,
        )
