"""
perp-agent Core: Settings

Singleton Settings record: created with defaults on first read, updated
by user action through validated partial updates, never deleted.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.exceptions import InvalidSettings
from core.interfaces import Repository
from core.models import Settings, TradingMode, utcnow

logger = logging.getLogger(__name__)


class SettingsUpdate(BaseModel):
    """Partial settings update with hard bounds"""
    model_config = ConfigDict(extra="forbid")

    leverage: Optional[int] = Field(default=None, ge=1, le=100, description="Leverage multiplier")
    balance_allocation_pct: Optional[float] = Field(default=None, ge=10, le=100, description="Balance allocation %")
    max_concurrent_trades: Optional[int] = Field(default=None, ge=1, le=10, description="Max open trades")
    trading_mode: Optional[TradingMode] = Field(default=None, description="Trading mode")
    auto_trading_enabled: Optional[bool] = Field(default=None, description="Auto-trading switch")


class SettingsService:
    """Read and update the Settings singleton through the repository."""

    def __init__(self, repository: Repository, defaults: Optional[Dict[str, Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self._clock = clock or utcnow
        self._defaults = self._build_defaults(defaults or {})

    def _build_defaults(self, raw: Dict[str, Any]) -> Settings:
        try:
            validated = SettingsUpdate(**raw)
        except ValidationError as e:
            raise InvalidSettings(f"Invalid settings defaults: {e}") from e
        return self._apply(Settings(), validated)

    def get_settings(self) -> Settings:
        settings = self.repository.get_settings()
        if settings is None:
            settings = replace(self._defaults, updated_at=self._clock())
            self.repository.save_settings(settings)
            logger.info(f"Created default settings: {settings.to_dict()}")
        return settings

    def update_settings(self, **changes: Any) -> Settings:
        """
        Apply a validated partial update.

        Raises:
            InvalidSettings: If any field is unknown or out of bounds
        """
        try:
            validated = SettingsUpdate(**changes)
        except ValidationError as e:
            messages = [
                f"{' -> '.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise InvalidSettings("; ".join(messages)) from e

        settings = self._apply(self.get_settings(), validated)
        settings.updated_at = self._clock()
        self.repository.save_settings(settings)
        logger.info(f"Settings updated: {validated.model_dump(exclude_none=True, mode='json')}")
        return settings

    @staticmethod
    def _apply(settings: Settings, update: SettingsUpdate) -> Settings:
        fields = update.model_dump(exclude_none=True)
        if "trading_mode" in fields:
            fields["trading_mode"] = fields["trading_mode"].value
        return replace(settings, **fields)
