"""
Tests for AuditLogger

One JSON line per pass; status derived from the pass outcome.
"""

import json
from unittest.mock import patch

from core.audit_log import AuditLogger
from core.execution import ExecutionResult
from core.models import Recommendation
from core.monitor import MonitorResult
from core.trading_cycle import CycleResult
from tests.helpers import T0


def _lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestAuditLogger:
    def test_no_trade_analysis(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        result = CycleResult(success=True,
                             recommendation=Recommendation.no_trade("ETHUSD", "flat"),
                             no_trade_reason="no_trade")

        audit.log_analysis(T0, "DRY_RUN", "scalping", result)

        entry = _lines(tmp_path / "audit.jsonl")[0]
        assert entry["pass"] == "analysis"
        assert entry["status"] == "NO_TRADE"
        assert entry["timestamp"] == T0.isoformat()
        assert entry["recommendation"]["direction"] == "none"

    def test_deferred_and_error_status(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        deferred = CycleResult(success=True, execution=ExecutionResult(pending_order_id="p-1"))
        failed = CycleResult(success=False, no_trade_reason="execution_failed", error="boom")

        audit.log_analysis(T0, "LIVE", "swing", deferred)
        audit.log_analysis(T0, "LIVE", "swing", failed)

        statuses = [e["status"] for e in _lines(tmp_path / "audit.jsonl")]
        assert statuses == ["DEFERRED", "ERROR"]

    def test_monitor_entry(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))

        audit.log_monitor(T0, "LIVE", MonitorResult(current_price=2700.0, checked=2, errors=["x"]))

        entry = _lines(tmp_path / "audit.jsonl")[0]
        assert entry["pass"] == "monitor"
        assert entry["checked"] == 2
        assert entry["errors"] == ["x"]

    def test_get_recent_newest_first(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        for price in (1.0, 2.0, 3.0):
            audit.log_monitor(T0, "LIVE", MonitorResult(current_price=price))

        recent = audit.get_recent(2)

        assert [e["current_price"] for e in recent] == [3.0, 2.0]

    def test_get_recent_missing_file(self, tmp_path):
        assert AuditLogger(str(tmp_path / "none" / "audit.jsonl")).get_recent() == []

    def test_write_failure_does_not_raise(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        with patch("builtins.open", side_effect=OSError("disk full")):
            audit.log_monitor(T0, "LIVE", MonitorResult())
