"""
Persistence for settings, trades, analyses and daily performance.

Backends:
- SQLiteRepository: durable, queryable (default)
- InMemoryRepository: dry runs and tests

Both support transaction(): writes inside the block commit together or
not at all.
"""

import copy
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from core.interfaces import Repository
from core.models import AnalysisRecord, DailyPerformance, Settings, Trade, TradeStatus

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        leverage INTEGER NOT NULL,
        balance_allocation_pct REAL NOT NULL,
        max_concurrent_trades INTEGER NOT NULL,
        trading_mode TEXT NOT NULL,
        auto_trading_enabled INTEGER NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trades (
        id TEXT PRIMARY KEY,
        symbol TEXT NOT NULL,
        direction TEXT NOT NULL,
        entry_price REAL NOT NULL,
        quantity INTEGER NOT NULL,
        leverage INTEGER NOT NULL,
        stop_loss REAL NOT NULL,
        take_profit REAL NOT NULL,
        confidence REAL,
        contract_value REAL NOT NULL,
        trading_mode TEXT,
        reasoning TEXT,
        order_ref TEXT,
        status TEXT NOT NULL,
        entry_time TIMESTAMP NOT NULL,
        exit_time TIMESTAMP,
        exit_price REAL,
        pnl REAL,
        pnl_pct REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)",
    "CREATE INDEX IF NOT EXISTS idx_trades_entry_time ON trades(entry_time)",
    """
    CREATE TABLE IF NOT EXISTS analyses (
        id TEXT PRIMARY KEY,
        trading_mode TEXT NOT NULL,
        symbol TEXT NOT NULL,
        direction TEXT NOT NULL,
        entry_price REAL,
        stop_loss REAL,
        take_profit REAL,
        confidence REAL,
        rationale TEXT,
        execution_strategy TEXT,
        current_price REAL,
        volatility_pct REAL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_performance (
        date TEXT PRIMARY KEY,
        total_pnl REAL NOT NULL,
        total_trades INTEGER NOT NULL,
        winning_trades INTEGER NOT NULL,
        losing_trades INTEGER NOT NULL,
        win_rate REAL NOT NULL,
        best_asset TEXT,
        largest_win REAL NOT NULL,
        worst_asset TEXT,
        largest_loss REAL NOT NULL,
        trading_mode TEXT
    )
    """,
]

_TRADE_COLUMNS = (
    "id", "symbol", "direction", "entry_price", "quantity", "leverage", "stop_loss",
    "take_profit", "confidence", "contract_value", "trading_mode", "reasoning", "order_ref",
    "status", "entry_time", "exit_time", "exit_price", "pnl", "pnl_pct",
)


class SQLiteRepository(Repository):
    """
    SQLite-backed repository.

    Each call opens a short-lived connection unless a transaction is
    active on the calling thread, in which case the transaction's
    connection is reused and committed when the block exits.
    """

    def __init__(self, db_path: str = "data/perp_agent.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._init_schema()
        logger.info(f"SQLiteRepository initialized at {self.db_path}")

    def _init_schema(self) -> None:
        conn = sqlite3.connect(str(self.db_path))
        try:
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            # Nested: join the outer transaction
            yield
            return

        with self._write_lock:
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            try:
                yield
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._local.conn = None
                conn.close()

    # ----- settings -----

    def get_settings(self) -> Optional[Settings]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM settings WHERE id = 1").fetchone()
        if row is None:
            return None
        return Settings(
            leverage=row["leverage"],
            balance_allocation_pct=row["balance_allocation_pct"],
            max_concurrent_trades=row["max_concurrent_trades"],
            trading_mode=row["trading_mode"],
            auto_trading_enabled=bool(row["auto_trading_enabled"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    def save_settings(self, settings: Settings) -> None:
        with self._write_lock, self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO settings VALUES (1, ?, ?, ?, ?, ?, ?)
                """,
                (
                    settings.leverage,
                    settings.balance_allocation_pct,
                    settings.max_concurrent_trades,
                    settings.trading_mode,
                    1 if settings.auto_trading_enabled else 0,
                    _iso(settings.updated_at),
                ),
            )

    # ----- trades -----

    def create_trade(self, trade: Trade) -> None:
        placeholders = ", ".join("?" for _ in _TRADE_COLUMNS)
        with self._write_lock, self._connection() as conn:
            conn.execute(
                f"INSERT INTO trades ({', '.join(_TRADE_COLUMNS)}) VALUES ({placeholders})",
                self._trade_values(trade),
            )

    def update_trade(self, trade: Trade) -> None:
        assignments = ", ".join(f"{col} = ?" for col in _TRADE_COLUMNS[1:])
        values = self._trade_values(trade)
        with self._write_lock, self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE trades SET {assignments} WHERE id = ?",
                values[1:] + (trade.id,),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Trade not found: {trade.id}")

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return self._row_to_trade(row) if row else None

    def get_open_trades(self) -> List[Trade]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE status = ? ORDER BY entry_time",
                (TradeStatus.OPEN.value,),
            ).fetchall()
        return [self._row_to_trade(r) for r in rows]

    def get_trades(self, limit: int = 100) -> List[Trade]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades ORDER BY entry_time DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [self._row_to_trade(r) for r in rows]

    @staticmethod
    def _trade_values(trade: Trade) -> tuple:
        return (
            trade.id, trade.symbol, trade.direction, trade.entry_price, trade.quantity,
            trade.leverage, trade.stop_loss, trade.take_profit, trade.confidence,
            trade.contract_value, trade.trading_mode, trade.reasoning, trade.order_ref,
            trade.status, _iso(trade.entry_time), _iso(trade.exit_time), trade.exit_price,
            trade.pnl, trade.pnl_pct,
        )

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> Trade:
        data: Dict[str, Any] = dict(row)
        data["entry_time"] = _parse_dt(data["entry_time"])
        data["exit_time"] = _parse_dt(data["exit_time"])
        return Trade(**data)

    # ----- analyses -----

    def save_analysis(self, record: AnalysisRecord) -> None:
        with self._write_lock, self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO analyses VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id, record.trading_mode, record.symbol, record.direction,
                    record.entry_price, record.stop_loss, record.take_profit, record.confidence,
                    record.rationale, record.execution_strategy, record.current_price,
                    record.volatility_pct, _iso(record.created_at),
                ),
            )

    def get_latest_analysis(self) -> Optional[AnalysisRecord]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM analyses ORDER BY created_at DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["created_at"] = _parse_dt(data["created_at"])
        return AnalysisRecord(**data)

    # ----- daily performance -----

    def get_daily_performance(self, date: str) -> Optional[DailyPerformance]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM daily_performance WHERE date = ?", (date,)
            ).fetchone()
        return DailyPerformance(**dict(row)) if row else None

    def save_daily_performance(self, performance: DailyPerformance) -> None:
        with self._write_lock, self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO daily_performance VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    performance.date, performance.total_pnl, performance.total_trades,
                    performance.winning_trades, performance.losing_trades, performance.win_rate,
                    performance.best_asset, performance.largest_win, performance.worst_asset,
                    performance.largest_loss, performance.trading_mode,
                ),
            )


class InMemoryRepository(Repository):
    """Dict-backed repository. transaction() restores a snapshot on error."""

    def __init__(self):
        self._settings: Optional[Settings] = None
        self._trades: Dict[str, Trade] = {}
        self._analyses: List[AnalysisRecord] = []
        self._daily: Dict[str, DailyPerformance] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy((self._settings, self._trades, self._analyses, self._daily))
            try:
                yield
            except Exception:
                self._settings, self._trades, self._analyses, self._daily = snapshot
                raise

    def get_settings(self) -> Optional[Settings]:
        with self._lock:
            return copy.deepcopy(self._settings)

    def save_settings(self, settings: Settings) -> None:
        with self._lock:
            self._settings = copy.deepcopy(settings)

    def create_trade(self, trade: Trade) -> None:
        with self._lock:
            if trade.id in self._trades:
                raise ValueError(f"Trade already exists: {trade.id}")
            self._trades[trade.id] = copy.deepcopy(trade)

    def update_trade(self, trade: Trade) -> None:
        with self._lock:
            if trade.id not in self._trades:
                raise KeyError(f"Trade not found: {trade.id}")
            self._trades[trade.id] = copy.deepcopy(trade)

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._lock:
            return copy.deepcopy(self._trades.get(trade_id))

    def get_open_trades(self) -> List[Trade]:
        with self._lock:
            trades = [t for t in self._trades.values() if t.status == TradeStatus.OPEN.value]
            return copy.deepcopy(sorted(trades, key=lambda t: t.entry_time))

    def get_trades(self, limit: int = 100) -> List[Trade]:
        with self._lock:
            trades = sorted(self._trades.values(), key=lambda t: t.entry_time, reverse=True)
            return copy.deepcopy(trades[:limit])

    def save_analysis(self, record: AnalysisRecord) -> None:
        with self._lock:
            self._analyses.append(copy.deepcopy(record))

    def get_latest_analysis(self) -> Optional[AnalysisRecord]:
        with self._lock:
            return copy.deepcopy(self._analyses[-1]) if self._analyses else None

    def get_daily_performance(self, date: str) -> Optional[DailyPerformance]:
        with self._lock:
            return copy.deepcopy(self._daily.get(date))

    def save_daily_performance(self, performance: DailyPerformance) -> None:
        with self._lock:
            self._daily[performance.date] = copy.deepcopy(performance)


def create_repository(raw_config: Optional[Dict[str, Any]]) -> Repository:
    """Build the repository named by the storage config section."""
    raw_config = raw_config or {}
    backend = str(raw_config.get("backend", "sqlite")).lower()
    if backend == "memory":
        return InMemoryRepository()
    if backend == "sqlite":
        return SQLiteRepository(raw_config.get("sqlite_path", "data/perp_agent.db"))
    raise ValueError(f"Unknown storage backend: {backend}")
