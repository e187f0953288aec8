"""
perp-agent Core: Concurrency Guard

One non-blocking latch per pass kind. If a pass of a given kind is
already running, a new trigger for that kind is dropped, not queued.
"""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, Tuple
import logging
import threading

logger = logging.getLogger(__name__)

ANALYSIS = "analysis"
MONITOR = "monitor"


class ConcurrencyGuard:
    """
    Try-acquire latch per pass kind.

    Usage:
        guard = ConcurrencyGuard()
        ran, result = guard.run("monitor", monitor.execute_pass)
        if not ran:
            ...  # previous monitor pass still in flight
    """

    def __init__(self, kinds: Iterable[str] = (ANALYSIS, MONITOR)):
        self._locks: Dict[str, threading.Lock] = {kind: threading.Lock() for kind in kinds}
        self._registry_lock = threading.Lock()

    def _latch(self, kind: str) -> threading.Lock:
        with self._registry_lock:
            latch = self._locks.get(kind)
            if latch is None:
                latch = threading.Lock()
                self._locks[kind] = latch
            return latch

    @contextmanager
    def guard(self, kind: str) -> Iterator[bool]:
        """Yield True if the slot was acquired, False if a pass is in flight."""
        latch = self._latch(kind)
        acquired = latch.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                latch.release()

    def run(self, kind: str, fn: Callable[..., Any], *args, **kwargs) -> Tuple[bool, Any]:
        """
        Run fn under the latch for kind.

        Returns:
            (ran, result). ran is False when the call was dropped.
        """
        with self.guard(kind) as acquired:
            if not acquired:
                logger.info(f"⏭️  {kind} pass already running, skipping trigger")
                return False, None
            return True, fn(*args, **kwargs)

    def is_running(self, kind: str) -> bool:
        return self._latch(kind).locked()
