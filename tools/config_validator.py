"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_TIMEFRAMES = {"1m", "5m", "15m", "30m", "1h", "4h", "1d"}
_TRADING_MODES = "^(scalping|intraday|swing|longterm)$"


# ===== App Schema =====
class AppSection(BaseModel):
    """Top-level app settings"""
    mode: str = Field(pattern="^(DRY_RUN|LIVE)$", description="Execution mode")
    symbol: str = Field(min_length=1, description="Perpetual contract symbol")


class ExchangeConfig(BaseModel):
    """Exchange connection"""
    base_url: str = Field(pattern="^https?://", description="REST base URL")
    api_key_env: str = Field(default="DELTA_API_KEY", min_length=1)
    api_secret_env: str = Field(default="DELTA_API_SECRET", min_length=1)
    timeout_seconds: float = Field(default=20, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)


class AIConfig(BaseModel):
    """Recommendation model"""
    provider: str = Field(pattern="^(openai|groq|anthropic|mock)$")
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key_env: str = Field(default="GROQ_API_KEY", min_length=1)
    timeout_seconds: float = Field(default=30, gt=0)


class StorageConfig(BaseModel):
    """Persistence backend"""
    backend: str = Field(pattern="^(sqlite|memory)$")
    sqlite_path: str = Field(default="data/perp_agent.db", min_length=1)


class NotificationsConfig(BaseModel):
    """Email notifications"""
    enabled: bool = False
    dry_run: bool = True
    api_key_env: str = Field(default="RESEND_API_KEY", min_length=1)
    from_address: str = Field(min_length=3)
    to_env: str = Field(default="NOTIFY_EMAIL_TO", min_length=1)
    timeout_seconds: float = Field(default=10, gt=0)
    dedupe_seconds: float = Field(default=60, ge=0)


class LoopConfig(BaseModel):
    """Scheduler cadences"""
    monitor_interval_seconds: float = Field(gt=0)
    pending_cleanup_seconds: float = Field(gt=0)
    status_log_minutes: float = Field(gt=0)
    daily_report_utc: str = Field(description="HH:MM (UTC)")
    tick_seconds: float = Field(default=1, gt=0)

    @field_validator('daily_report_utc')
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(str(v)):
            raise ValueError(f"daily_report_utc must be HH:MM, got {v!r}")
        return v


class LoggingConfig(BaseModel):
    """Log destinations"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/perp_agent.log")
    audit_file: str = Field(default="logs/audit.jsonl")


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    exchange: ExchangeConfig
    ai: AIConfig
    storage: StorageConfig
    notifications: NotificationsConfig
    loop: LoopConfig
    logging: LoggingConfig


# ===== Policy Schema =====
class SanitizerConfig(BaseModel):
    """Recommendation clamps"""
    min_confidence: float = Field(ge=0, le=100)
    max_entry_deviation_pct: float = Field(gt=0, le=10)
    entry_offset_pct: float = Field(ge=0, le=10)
    stop_loss_pct: float = Field(gt=0, le=50)
    reward_multiple: float = Field(gt=0)
    min_risk_reward: float = Field(gt=0)
    max_candle_divergence_pct: float = Field(gt=0, le=100)
    price_precision: int = Field(ge=0, le=8)


class ExecutionConfig(BaseModel):
    """Limit/market decision thresholds"""
    min_limit_deviation_pct: float = Field(ge=0)
    max_limit_deviation_pct: float = Field(gt=0)
    collateral_priority: List[str] = Field(min_length=1)


class PendingOrdersConfig(BaseModel):
    ttl_minutes: float = Field(gt=0)
    trigger_tolerance_pct: float = Field(ge=0, le=5)


class MonitorConfig(BaseModel):
    warmup_seconds: float = Field(ge=0)


class SettingsDefaultsConfig(BaseModel):
    """Defaults written on first settings read"""
    leverage: int = Field(ge=1, le=100)
    balance_allocation_pct: float = Field(ge=10, le=100)
    max_concurrent_trades: int = Field(ge=1, le=10)
    trading_mode: str = Field(pattern=_TRADING_MODES)
    auto_trading_enabled: bool = False


class SnapshotConfig(BaseModel):
    candle_count: int = Field(gt=1, le=1000)
    orderbook_depth: int = Field(gt=0, le=100)
    timeframes: List[str] = Field(min_length=1)

    @field_validator('timeframes')
    @classmethod
    def validate_timeframes(cls, v: List[str]) -> List[str]:
        unknown = [tf for tf in v if tf not in _TIMEFRAMES]
        if unknown:
            raise ValueError(f"Unsupported timeframes: {unknown}")
        return v


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    sanitizer: SanitizerConfig
    execution: ExecutionConfig
    pending_orders: PendingOrdersConfig
    monitor: MonitorConfig
    settings_defaults: SettingsDefaultsConfig
    snapshot: SnapshotConfig


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)

    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    path = config_dir / filename

    try:
        config = load_yaml_file(path)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except Exception as e:
        errors.append(f"{filename}: Unexpected error - {e}")

    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Perform logical consistency checks across configuration files.

    Detects:
    - Limit deviation window that is empty (min >= max)
    - Bracket reward multiple below the minimum acceptable R:R
    - Fallback entry offset outside the allowed entry deviation
    - LIVE mode with notification dry-run still on (warning only)
    """
    errors: List[str] = []

    try:
        policy = load_yaml_file(config_dir / "policy.yaml")
        app = load_yaml_file(config_dir / "app.yaml")
    except Exception as e:
        return [f"Sanity checks skipped: {e}"]

    sanitizer = policy.get("sanitizer", {})
    execution = policy.get("execution", {})

    min_dev = execution.get("min_limit_deviation_pct", 0)
    max_dev = execution.get("max_limit_deviation_pct", 0)
    if min_dev >= max_dev:
        errors.append(
            f"execution.min_limit_deviation_pct ({min_dev}) must be < "
            f"max_limit_deviation_pct ({max_dev})"
        )

    reward = sanitizer.get("reward_multiple", 0)
    min_rr = sanitizer.get("min_risk_reward", 0)
    if reward < min_rr:
        errors.append(
            f"sanitizer.reward_multiple ({reward}) is below min_risk_reward ({min_rr}); "
            "every recommendation would be rejected"
        )

    offset = sanitizer.get("entry_offset_pct", 0)
    max_entry_dev = sanitizer.get("max_entry_deviation_pct", 0)
    if offset > max_entry_dev:
        errors.append(
            f"sanitizer.entry_offset_pct ({offset}) exceeds max_entry_deviation_pct ({max_entry_dev})"
        )

    if max_dev > max_entry_dev:
        errors.append(
            f"execution.max_limit_deviation_pct ({max_dev}) exceeds "
            f"sanitizer.max_entry_deviation_pct ({max_entry_dev})"
        )

    report_time = str(app.get("loop", {}).get("daily_report_utc", ""))
    if not _HHMM.match(report_time):
        errors.append(f"loop.daily_report_utc must be HH:MM, got {report_time!r}")

    mode = app.get("app", {}).get("mode")
    notifications = app.get("notifications", {})
    if mode == "LIVE" and notifications.get("enabled") and notifications.get("dry_run"):
        logger.warning("⚠️  LIVE mode with notifications.dry_run=true; emails will only be logged")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []

    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
