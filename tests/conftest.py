"""
Pytest configuration and fixtures for perp-agent tests.

This conftest.py wires the engine against in-memory collaborators.
"""
import pytest

from core.execution import ExecutionDecider
from core.models import Settings
from core.pending_orders import PendingOrderStore
from core.risk_sanitizer import RiskSanitizer
from core.trade_ledger import TradeLedger
from infra.storage import InMemoryRepository
from tests.helpers import FakeExchange, FrozenClock, RecordingNotifier


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger(repository, notifier, clock):
    return TradeLedger(repository, notifier=notifier, clock=clock)


@pytest.fixture
def store(clock):
    return PendingOrderStore(clock=clock)


@pytest.fixture
def sanitizer():
    return RiskSanitizer()


@pytest.fixture
def decider(exchange, ledger, store, sanitizer, notifier, clock):
    return ExecutionDecider(exchange, ledger, store, sanitizer=sanitizer, notifier=notifier, mode="LIVE",
                            clock=clock)


@pytest.fixture
def settings():
    return Settings(leverage=10, balance_allocation_pct=100, max_concurrent_trades=1,
                    trading_mode="scalping", auto_trading_enabled=True)
