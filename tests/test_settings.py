"""
Tests for SettingsService

Defaults are created on first read; updates are validated against hard
bounds and applied partially.
"""

import pytest

from core.exceptions import InvalidSettings
from core.models import TradingMode
from core.settings import SettingsService
from infra.storage import InMemoryRepository
from tests.helpers import FrozenClock


class TestSettingsService:
    def setup_method(self):
        self.repo = InMemoryRepository()
        self.clock = FrozenClock()
        self.service = SettingsService(self.repo, clock=self.clock)

    def test_defaults_created_on_first_read(self):
        settings = self.service.get_settings()

        assert settings.leverage == 50
        assert settings.balance_allocation_pct == 100
        assert settings.max_concurrent_trades == 1
        assert settings.trading_mode == "scalping"
        assert settings.auto_trading_enabled is False
        assert self.repo.get_settings() is not None

    def test_configured_defaults(self):
        service = SettingsService(self.repo, defaults={"leverage": 20, "trading_mode": "swing"})

        settings = service.get_settings()

        assert settings.leverage == 20
        assert settings.mode is TradingMode.SWING

    def test_invalid_defaults_rejected(self):
        with pytest.raises(InvalidSettings):
            SettingsService(self.repo, defaults={"leverage": 500})

    def test_partial_update(self):
        self.clock.advance(minutes=3)

        updated = self.service.update_settings(leverage=25, trading_mode="intraday")

        assert updated.leverage == 25
        assert updated.trading_mode == "intraday"
        assert updated.balance_allocation_pct == 100
        assert updated.updated_at == self.clock.now
        assert self.service.get_settings().leverage == 25

    def test_disable_auto_trading(self):
        self.service.update_settings(auto_trading_enabled=True)
        settings = self.service.update_settings(auto_trading_enabled=False)
        assert settings.auto_trading_enabled is False

    @pytest.mark.parametrize("changes", [
        {"leverage": 0},
        {"leverage": 101},
        {"balance_allocation_pct": 5},
        {"balance_allocation_pct": 150},
        {"max_concurrent_trades": 11},
        {"trading_mode": "hyper"},
        {"unknown_field": 1},
    ])
    def test_out_of_bounds_rejected(self, changes):
        with pytest.raises(InvalidSettings):
            self.service.update_settings(**changes)

        assert self.service.get_settings().leverage == 50

    def test_mode_schedule(self):
        assert TradingMode.SCALPING.timeframe == "5m"
        assert TradingMode.INTRADAY.interval_minutes == 15
        assert TradingMode.SWING.timeframe == "1h"
        assert TradingMode.LONGTERM.interval_minutes == 1440
