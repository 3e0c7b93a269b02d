"""SQLite-backed ledger store for positionflow."""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..core.models import CashTransaction, Transaction

DEFAULT_DB_PATH = Path.home() / ".positionflow" / "positionflow.db"
DB_ENV_VAR = "POSITIONFLOW_DB_PATH"
CONNECT_TIMEOUT_SECONDS = 30.0


def _determine_db_path() -> Path:
    override = os.environ.get(DB_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return DEFAULT_DB_PATH


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


_SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    activity_date TEXT NOT NULL,
    symbol TEXT NOT NULL,
    instrument TEXT,
    description TEXT NOT NULL DEFAULT '',
    transaction_code TEXT NOT NULL,
    asset_type TEXT NOT NULL,
    quantity TEXT NOT NULL,
    price TEXT NOT NULL,
    amount TEXT NOT NULL,
    fees TEXT NOT NULL,
    strike_price TEXT,
    expiration_date TEXT,
    option_type TEXT,
    contract_month TEXT,
    multiplier TEXT,
    is_opening INTEGER NOT NULL,
    is_long INTEGER NOT NULL,
    position_id INTEGER,
    strategy_id INTEGER,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transactions_user_symbol
    ON transactions(user_id, symbol);
CREATE INDEX IF NOT EXISTS idx_transactions_activity_date
    ON transactions(activity_date);

CREATE TABLE IF NOT EXISTS cash_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    transaction_code TEXT NOT NULL,
    amount TEXT NOT NULL,
    activity_date TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_cash_transactions_user
    ON cash_transactions(user_id);

CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    position_key TEXT NOT NULL UNIQUE,
    instrument_key TEXT NOT NULL,
    user_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    asset_type TEXT NOT NULL,
    side TEXT NOT NULL,
    multiplier TEXT NOT NULL,
    opened_at TEXT NOT NULL,
    strike_price TEXT,
    expiration_date TEXT,
    option_type TEXT,
    contract_month TEXT,
    opening_quantity TEXT NOT NULL,
    current_quantity TEXT NOT NULL,
    average_opening_price TEXT NOT NULL,
    total_cost_basis TEXT NOT NULL,
    open_cost_basis TEXT NOT NULL,
    total_closing_amount TEXT NOT NULL,
    realized_pl TEXT NOT NULL,
    unrealized_pl TEXT NOT NULL,
    status TEXT NOT NULL,
    opening_transaction_ids TEXT NOT NULL,
    closing_transaction_ids TEXT NOT NULL,
    closed_at TEXT,
    needs_reconciliation INTEGER NOT NULL DEFAULT 0,
    strategy_id INTEGER REFERENCES strategies(id) ON DELETE SET NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_positions_instrument ON positions(instrument_key);
CREATE INDEX IF NOT EXISTS idx_positions_user_status ON positions(user_id, status);

CREATE TABLE IF NOT EXISTS position_matches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    position_id INTEGER NOT NULL REFERENCES positions(id) ON DELETE CASCADE,
    opening_transaction_id INTEGER NOT NULL,
    closing_transaction_id INTEGER NOT NULL,
    matched_quantity TEXT NOT NULL,
    opening_price TEXT NOT NULL,
    closing_price TEXT NOT NULL,
    realized_pl TEXT NOT NULL,
    matched_at TEXT NOT NULL,
    UNIQUE(opening_transaction_id, closing_transaction_id)
);

CREATE INDEX IF NOT EXISTS idx_position_matches_position
    ON position_matches(position_id);

CREATE TABLE IF NOT EXISTS strategies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_key TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    strategy_type TEXT NOT NULL,
    underlying_symbol TEXT NOT NULL,
    direction TEXT,
    confidence TEXT NOT NULL,
    opened_at TEXT NOT NULL,
    expiration_date TEXT,
    legs_json TEXT NOT NULL,
    total_opening_cost TEXT NOT NULL,
    total_closing_proceeds TEXT NOT NULL,
    realized_pl TEXT NOT NULL,
    unrealized_pl TEXT NOT NULL,
    status TEXT NOT NULL,
    closed_at TEXT,
    max_risk TEXT,
    max_profit TEXT,
    breakeven_points TEXT NOT NULL,
    needs_reconciliation INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_strategies_user_status ON strategies(user_id, status);

CREATE TABLE IF NOT EXISTS portfolio_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    snapshot_date TEXT NOT NULL,
    portfolio_value TEXT NOT NULL,
    net_cash_flow TEXT NOT NULL,
    total_market_value TEXT NOT NULL,
    total_realized_pl TEXT NOT NULL,
    total_unrealized_pl TEXT NOT NULL,
    open_positions_count INTEGER NOT NULL,
    total_positions_count INTEGER NOT NULL,
    positions_breakdown TEXT NOT NULL,
    stale_symbols TEXT NOT NULL,
    daily_pl_change TEXT,
    daily_pl_percent TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE(user_id, snapshot_date)
);

CREATE TABLE IF NOT EXISTS reconciliation_faults (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    transaction_id INTEGER NOT NULL,
    instrument_key TEXT NOT NULL,
    kind TEXT NOT NULL,
    shortfall TEXT NOT NULL,
    detail TEXT NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    UNIQUE(transaction_id, kind)
);

CREATE INDEX IF NOT EXISTS idx_faults_instrument ON reconciliation_faults(instrument_key);
"""


class SQLiteStorage:
    """Thin wrapper around the SQLite database holding the ledger and derived state."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else _determine_db_path()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=CONNECT_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        self._initialized = True

    def append_transactions(self, transactions: Iterable[Transaction]) -> List[Transaction]:
        """Append ledger rows and return them with their assigned ids."""
        self._ensure_initialized()
        recorded_at = utc_timestamp()
        stored: List[Transaction] = []
        with self._connect() as conn:
            for txn in transactions:
                cur = conn.execute(
                    """
                    INSERT INTO transactions (
                        user_id, activity_date, symbol, instrument, description,
                        transaction_code, asset_type, quantity, price, amount, fees,
                        strike_price, expiration_date, option_type, contract_month,
                        multiplier, is_opening, is_long, recorded_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        txn.user_id,
                        txn.activity_date.isoformat(),
                        txn.symbol,
                        txn.instrument,
                        txn.description,
                        txn.transaction_code,
                        txn.asset_type,
                        decimal_to_text(txn.quantity),
                        decimal_to_text(txn.price),
                        decimal_to_text(txn.amount),
                        decimal_to_text(txn.fees),
                        decimal_to_text(txn.strike_price),
                        txn.expiration_date.isoformat() if txn.expiration_date else None,
                        txn.option_type,
                        txn.contract_month,
                        decimal_to_text(txn.multiplier),
                        int(txn.is_opening),
                        int(txn.is_long),
                        recorded_at,
                    ),
                )
                row_id = cur.lastrowid
                if row_id is None:  # pragma: no cover - sqlite should always return a value
                    raise RuntimeError("Failed to record transaction")
                stored.append(txn.model_copy(update={"id": int(row_id)}))
        return stored

    def append_cash_transactions(
        self, transactions: Iterable[CashTransaction]
    ) -> List[CashTransaction]:
        """Append cash-ledger rows and return them with their assigned ids."""
        self._ensure_initialized()
        stored: List[CashTransaction] = []
        with self._connect() as conn:
            for txn in transactions:
                cur = conn.execute(
                    """
                    INSERT INTO cash_transactions (
                        user_id, transaction_code, amount, activity_date, description
                    )
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        txn.user_id,
                        txn.transaction_code,
                        decimal_to_text(txn.amount),
                        txn.activity_date.isoformat(),
                        txn.description,
                    ),
                )
                row_id = cur.lastrowid
                if row_id is None:  # pragma: no cover - sqlite should always return a value
                    raise RuntimeError("Failed to record cash transaction")
                stored.append(txn.model_copy(update={"id": int(row_id)}))
        return stored


# Values are stored as TEXT in SQLite to preserve Decimal precision.
NumberLike = Union[Decimal, float, int]


def decimal_to_text(value: Optional[NumberLike]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


@lru_cache(maxsize=1)
def get_storage() -> SQLiteStorage:
    """Return a cached storage instance."""
    return SQLiteStorage()
