"""
Tests for ConcurrencyGuard

Verifies a second trigger of the same pass kind is dropped while the
first is running, and different kinds do not block each other.
"""

import threading

from core.concurrency import ANALYSIS, MONITOR, ConcurrencyGuard


class TestConcurrencyGuard:
    def setup_method(self):
        self.guard = ConcurrencyGuard()

    def test_run_returns_result(self):
        ran, result = self.guard.run(MONITOR, lambda x: x * 2, 21)
        assert ran is True
        assert result == 42
        assert not self.guard.is_running(MONITOR)

    def test_overlapping_same_kind_is_dropped(self):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_pass():
            calls.append("slow")
            started.set()
            release.wait(timeout=5)
            return "done"

        outcome = {}
        worker = threading.Thread(target=lambda: outcome.update(first=self.guard.run(ANALYSIS, slow_pass)))
        worker.start()
        assert started.wait(timeout=5)

        assert self.guard.is_running(ANALYSIS)
        ran, result = self.guard.run(ANALYSIS, lambda: calls.append("second"))
        assert ran is False
        assert result is None

        release.set()
        worker.join(timeout=5)
        assert outcome["first"] == (True, "done")
        assert calls == ["slow"]

    def test_different_kinds_run_concurrently(self):
        with self.guard.guard(ANALYSIS) as acquired:
            assert acquired
            ran, _ = self.guard.run(MONITOR, lambda: None)
            assert ran is True

    def test_latch_released_after_exception(self):
        def boom():
            raise RuntimeError("pass failed")

        try:
            self.guard.run(MONITOR, boom)
        except RuntimeError:
            pass

        ran, _ = self.guard.run(MONITOR, lambda: None)
        assert ran is True

    def test_unknown_kind_created_lazily(self):
        with self.guard.guard("report") as acquired:
            assert acquired
            assert self.guard.is_running("report")
        assert not self.guard.is_running("report")
