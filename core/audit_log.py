"""
perp-agent Core: Audit Logger

Structured JSONL trail of every analysis and monitor pass.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only audit trail.

    One JSON object per line, with a "pass" field of "analysis" or
    "monitor". Write failures are logged and never interrupt a pass.
    """

    def __init__(self, audit_file: Optional[str] = None):
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_analysis(self, ts: datetime, mode: str, trading_mode: str, result: Any) -> None:
        """
        Log an analysis pass.

        Args:
            ts: Pass timestamp
            mode: App mode (DRY_RUN, LIVE)
            trading_mode: Settings trading mode
            result: CycleResult from the analysis pass
        """
        entry = {
            "timestamp": ts.isoformat(),
            "pass": "analysis",
            "mode": mode,
            "trading_mode": trading_mode,
            "status": self._determine_status(result),
            "no_trade_reason": getattr(result, "no_trade_reason", None),
            "error": getattr(result, "error", None),
        }
        recommendation = getattr(result, "recommendation", None)
        if recommendation is not None:
            entry["recommendation"] = recommendation.to_dict()
        sanitized = getattr(result, "sanitized", None)
        if sanitized is not None:
            entry["sanitized"] = sanitized.to_dict()
        execution = getattr(result, "execution", None)
        if execution is not None:
            entry["execution"] = execution.to_dict()
        self._write(entry)

    def log_monitor(self, ts: datetime, mode: str, result: Any) -> None:
        entry = {
            "timestamp": ts.isoformat(),
            "pass": "monitor",
            "mode": mode,
        }
        entry.update(result.to_dict())
        self._write(entry)

    def _determine_status(self, result: Any) -> str:
        if getattr(result, "error", None):
            return "ERROR"
        execution = getattr(result, "execution", None)
        if execution is not None and execution.success:
            return "EXECUTED" if execution.trade is not None else "DEFERRED"
        return "NO_TRADE"

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10) -> List[Dict[str, Any]]:
        """Most recent n entries, newest first"""
        if not self.audit_file.exists():
            return []
        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in lines[-n:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(entries))
