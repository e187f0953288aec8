"""
perp-agent Runner: Main Loop

Orchestrates the two trading cadences plus housekeeping jobs.

Flow:
1. Monitor pass every monitor_interval_seconds (pending triggers, trade reconciliation)
2. Analysis pass every trading-mode interval (snapshot -> recommendation -> sanitize -> execute)
3. Pending-order cleanup every pending_cleanup_seconds
4. Status log every status_log_minutes
5. Daily report email at daily_report_utc

Passes run on a two-worker thread pool; the ConcurrencyGuard drops a pass
whose previous run of the same kind is still in flight.
"""

import time
import signal
import yaml
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import os

from ai.model_client import create_model_client
from ai.recommender import LLMRecommendationService, MockRecommendationService
from ai.snapshot_builder import DEFAULT_TIMEFRAMES, build_market_snapshot
from core.audit_log import AuditLogger
from core.concurrency import ANALYSIS, MONITOR, ConcurrencyGuard
from core.exchange_delta import DELTA_BASE, DeltaExchange
from core.execution import ExecutionDecider, ExecutionPolicy
from core.models import NotificationEvent, NotificationKind, Trade, utcnow
from core.monitor import MonitorLoop, MonitorPolicy, MonitorResult
from core.pending_orders import PendingOrderPolicy, PendingOrderStore
from core.risk_sanitizer import RiskSanitizer, SanitizerPolicy, is_valid_price
from core.settings import SettingsService
from core.trade_ledger import TradeLedger
from core.trading_cycle import AnalysisPass, CycleResult
from infra.notifications import EmailNotifier
from infra.storage import create_repository

logger = logging.getLogger(__name__)


class AgentLoop:
    """
    Main agent orchestrator.

    Responsibilities:
    - Load and validate config
    - Wire collaborators and engine components
    - Fire passes at their cadences
    - Housekeeping: pending cleanup, status log, daily report
    """

    def __init__(self, config_dir: str = "config", configure_logging: bool = True):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        app_cfg = self.app_config.get("app", {}) or {}
        self.mode = str(app_cfg.get("mode", "DRY_RUN")).upper()
        self.symbol = app_cfg.get("symbol", "ETHUSD")

        log_cfg = self.app_config.get("logging", {}) or {}
        if configure_logging:
            log_file = log_cfg.get("file", "logs/perp_agent.log")
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            logging.basicConfig(
                level=getattr(logging, log_cfg.get("level", "INFO").upper()),
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
                handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
            )

        logger.info(f"Starting perp-agent in mode={self.mode} symbol={self.symbol}")

        # Collaborators
        exchange_cfg = self.app_config.get("exchange", {}) or {}
        self.exchange = DeltaExchange(
            symbol=self.symbol,
            api_key=os.getenv(exchange_cfg.get("api_key_env", "DELTA_API_KEY"), ""),
            api_secret=os.getenv(exchange_cfg.get("api_secret_env", "DELTA_API_SECRET"), ""),
            base_url=exchange_cfg.get("base_url", DELTA_BASE),
            timeout=float(exchange_cfg.get("timeout_seconds", 20)),
            max_retries=int(exchange_cfg.get("max_retries", 3)),
            read_only=(self.mode != "LIVE"),
        )
        self.repository = create_repository(self.app_config.get("storage"))
        self.notifier = EmailNotifier.from_config(self.app_config.get("notifications"))
        self.recommender = self._build_recommender(self.app_config.get("ai", {}) or {})
        self.audit = AuditLogger(log_cfg.get("audit_file"))

        # Engine
        policy = self.policy_config
        self.settings_service = SettingsService(self.repository, defaults=policy.get("settings_defaults"))
        self.sanitizer = RiskSanitizer(SanitizerPolicy.from_config(policy.get("sanitizer")))
        self.pending_store = PendingOrderStore(PendingOrderPolicy.from_config(policy.get("pending_orders")))
        self.ledger = TradeLedger(self.repository, notifier=self.notifier)
        self.decider = ExecutionDecider(
            self.exchange,
            self.ledger,
            self.pending_store,
            sanitizer=self.sanitizer,
            policy=ExecutionPolicy.from_config(policy.get("execution")),
            notifier=self.notifier,
            mode=self.mode,
        )
        self.guard = ConcurrencyGuard()
        self.monitor = MonitorLoop(
            self.exchange,
            self.exchange,
            self.ledger,
            self.pending_store,
            self.decider,
            settings_provider=self.settings_service.get_settings,
            guard=self.guard,
            policy=MonitorPolicy.from_config(policy.get("monitor")),
        )
        snapshot_cfg = policy.get("snapshot", {}) or {}
        self.snapshot_timeframes = tuple(snapshot_cfg.get("timeframes") or DEFAULT_TIMEFRAMES)
        self.candle_count = int(snapshot_cfg.get("candle_count", 150))
        self.orderbook_depth = int(snapshot_cfg.get("orderbook_depth", 10))
        self.analysis = AnalysisPass(
            snapshot_builder=self._build_snapshot,
            recommender=self.recommender,
            sanitizer=self.sanitizer,
            decider=self.decider,
            ledger=self.ledger,
            settings_service=self.settings_service,
            repository=self.repository,
            symbol=self.symbol,
            guard=self.guard,
        )

        # Cadences
        loop_cfg = self.app_config.get("loop", {}) or {}
        self.monitor_interval = float(loop_cfg.get("monitor_interval_seconds", 30))
        self.cleanup_interval = float(loop_cfg.get("pending_cleanup_seconds", 120))
        self.status_interval = float(loop_cfg.get("status_log_minutes", 15)) * 60
        self.tick_seconds = float(loop_cfg.get("tick_seconds", 1))
        hh, mm = str(loop_cfg.get("daily_report_utc", "18:29")).split(":")
        self.daily_report_time = (int(hh), int(mm))

        self._last_run: Dict[str, Optional[datetime]] = {
            "analysis": None,
            "monitor": None,
            "cleanup": None,
            "status": None,
        }
        self._last_report_date: Optional[str] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._inflight: Dict[str, Future] = {}
        self._running = False

        logger.info(f"Initialized AgentLoop in {self.mode} mode")

    def _load_yaml(self, filename: str) -> dict:
        with open(self.config_dir / filename) as f:
            return yaml.safe_load(f) or {}

    def _build_recommender(self, ai_cfg: Dict[str, Any]):
        provider = str(ai_cfg.get("provider", "mock")).lower()
        if provider == "mock":
            logger.info("Using mock recommendation service")
            return MockRecommendationService(symbol=self.symbol)

        api_key = os.getenv(ai_cfg.get("api_key_env", "GROQ_API_KEY"), "")
        if not api_key:
            logger.warning(f"No API key for AI provider '{provider}'; analysis will yield no trades")
            return MockRecommendationService(symbol=self.symbol)

        client = create_model_client(
            provider,
            api_key=api_key,
            model=ai_cfg.get("model"),
            base_url=ai_cfg.get("base_url"),
        )
        return LLMRecommendationService(client, self.symbol, timeout_s=float(ai_cfg.get("timeout_seconds", 30)))

    def _build_snapshot(self, trading_mode: str) -> Dict[str, Any]:
        return build_market_snapshot(
            self.exchange,
            trading_mode,
            timeframes=self.snapshot_timeframes,
            candle_count=self.candle_count,
            orderbook_depth=self.orderbook_depth,
            symbol=self.symbol,
        )

    # ----- passes -----

    def run_analysis_pass(self) -> Optional[CycleResult]:
        """Run one analysis pass. Returns None when skipped."""
        if not self.exchange.has_credentials():
            logger.info("Analysis skipped: exchange credentials not configured")
            return None

        started = utcnow()
        logger.info("=" * 60)
        logger.info(f"ANALYSIS PASS START {started.isoformat()}")
        result = self.analysis.run()
        if result is None:
            logger.info("Analysis pass skipped: previous pass still running")
            return None

        self.audit.log_analysis(started, self.mode, self.settings_service.get_settings().trading_mode, result)
        if result.execution is not None:
            logger.info(f"ANALYSIS PASS END: {result.execution.outcome}")
        else:
            logger.info(f"ANALYSIS PASS END: no trade ({result.no_trade_reason})")
        return result

    def run_monitor_pass(self) -> Optional[MonitorResult]:
        started = utcnow()
        result = self.monitor.run_pass()
        if result is None:
            logger.debug("Monitor pass skipped: previous pass still running")
            return None
        if result.triggered or result.closed or result.cancelled or result.errors:
            self.audit.log_monitor(started, self.mode, result)
        return result

    def cleanup_pending_orders(self) -> int:
        purged = self.pending_store.clear_expired()
        if purged:
            logger.info(f"Purged {purged} expired pending order(s)")
        return purged

    def send_daily_report(self, date: Optional[str] = None) -> Dict[str, Any]:
        report = self.ledger.build_daily_report(date)
        logger.info(
            f"📊 Daily report {report['date']}: pnl={report['total_pnl']:+.2f} "
            f"trades={report['total_trades']} win_rate={report['win_rate']:.1f}%"
        )
        try:
            self.notifier.notify(NotificationEvent(kind=NotificationKind.DAILY_REPORT, payload=report))
        except Exception as e:
            logger.warning(f"Daily report notification failed: {e}")
        return report

    def log_status(self) -> Dict[str, Any]:
        """Periodic status line: settings, local open trades, pending intents, exchange positions."""
        settings = self.settings_service.get_settings()
        open_trades = self.ledger.get_open_trades()
        positions = []
        if self.exchange.has_credentials():
            try:
                positions = self.exchange.get_positions()
            except Exception as e:
                logger.warning(f"Status: positions unavailable: {e}")

        status = {
            "mode": self.mode,
            "auto_trading_enabled": settings.auto_trading_enabled,
            "trading_mode": settings.trading_mode,
            "open_trades": len(open_trades),
            "pending_orders": self.pending_store.count(),
            "exchange_positions": positions,
        }
        logger.info(
            f"STATUS: auto={settings.auto_trading_enabled} mode={settings.trading_mode} "
            f"open={len(open_trades)} pending={status['pending_orders']} positions={len(positions)}"
        )
        return status

    # ----- manual operations -----

    def close_trade(self, trade_id: str, exit_price: Optional[float] = None) -> Trade:
        """
        Close a local trade record manually at exit_price (live price if omitted).

        The exchange position is not touched; use this after flattening on the venue.
        """
        trade = self.ledger.get_trade(trade_id)
        if trade is None:
            raise KeyError(f"Unknown trade {trade_id}")
        if exit_price is None:
            exit_price = self.exchange.get_current_price()
        if not is_valid_price(exit_price):
            raise ValueError(f"Invalid exit price {exit_price}")
        return self.ledger.close_trade(trade, exit_price)

    def cancel_pending_order(self, order_id: str) -> bool:
        return self.pending_store.cancel(order_id)

    def clear_pending_orders(self) -> int:
        return self.pending_store.clear_all()

    # ----- scheduling -----

    def _due(self, job: str, interval_seconds: float, now: datetime) -> bool:
        last = self._last_run[job]
        if last is None or (now - last).total_seconds() >= interval_seconds:
            self._last_run[job] = now
            return True
        return False

    def _report_due(self, now: datetime) -> bool:
        hh, mm = self.daily_report_time
        today = now.date().isoformat()
        if self._last_report_date == today:
            return False
        if (now.hour, now.minute) >= (hh, mm):
            self._last_report_date = today
            return True
        return False

    def _submit(self, kind: str, fn) -> None:
        if self._executor is None:
            fn()
            return
        # A trigger that lands while the previous pass is queued or running is dropped
        previous = self._inflight.get(kind)
        if previous is not None and not previous.done():
            logger.info(f"⏭️  {kind} pass still in flight, dropping trigger")
            return
        self._inflight[kind] = self._executor.submit(self._safe_call, fn)

    @staticmethod
    def _safe_call(fn) -> None:
        try:
            fn()
        except Exception as e:
            logger.error(f"Scheduled job {getattr(fn, '__name__', fn)} failed: {e}", exc_info=True)

    def _tick(self, now: datetime) -> None:
        if self._due("monitor", self.monitor_interval, now):
            self._submit(MONITOR, self.run_monitor_pass)

        analysis_interval = self.settings_service.get_settings().mode.interval_minutes * 60
        if self._due("analysis", analysis_interval, now):
            self._submit(ANALYSIS, self.run_analysis_pass)

        if self._due("cleanup", self.cleanup_interval, now):
            self._safe_call(self.cleanup_pending_orders)

        if self._due("status", self.status_interval, now):
            self._safe_call(self.log_status)

        if self._report_due(now):
            self._safe_call(self.send_daily_report)

    def _handle_stop(self, *_):
        logger.info("Shutdown signal received; stopping after in-flight passes")
        self._running = False

    def run_forever(self) -> None:
        """Tick the scheduler until a stop signal arrives."""
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        # Passes already recorded today are not re-reported on restart
        now = utcnow()
        if (now.hour, now.minute) >= self.daily_report_time:
            self._last_report_date = now.date().isoformat()

        self._running = True
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="pass")
        logger.info(
            f"Starting scheduler (monitor={self.monitor_interval:.0f}s, "
            f"report={self.daily_report_time[0]:02d}:{self.daily_report_time[1]:02d} UTC)"
        )
        try:
            while self._running:
                self._tick(utcnow())
                time.sleep(self.tick_seconds)
        finally:
            self._executor.shutdown(wait=True)
            self._executor = None
            logger.info("Agent loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="perp-agent autonomous futures trader")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--once-analysis", action="store_true", help="Run one analysis pass and exit")
    parser.add_argument("--once-monitor", action="store_true", help="Run one monitor pass and exit")
    parser.add_argument("--daily-report", action="store_true", help="Send today's report and exit")

    args = parser.parse_args()

    loop = AgentLoop(config_dir=args.config_dir)

    if args.once_analysis or args.once_monitor or args.daily_report:
        if args.once_monitor:
            loop.run_monitor_pass()
        if args.once_analysis:
            loop.run_analysis_pass()
        if args.daily_report:
            loop.send_daily_report()
    else:
        loop.run_forever()


if __name__ == "__main__":
    main()
