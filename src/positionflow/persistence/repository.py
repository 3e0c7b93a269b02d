"""Query and upsert helpers for the positionflow ledger store."""

from __future__ import annotations

import json
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Iterable, List, Literal, Optional, Sequence

from ..core.instruments import InstrumentKey
from ..core.models import (
    AssetBreakdown,
    CashTransaction,
    PortfolioSnapshot,
    Position,
    PositionMatch,
    ReconciliationFault,
    Strategy,
    StrategyLeg,
    Transaction,
)
from .storage import SQLiteStorage, decimal_to_text, get_storage, utc_timestamp

if TYPE_CHECKING:
    from ..services.lot_matching import MatchResult

PositionStatusFilter = Literal[
    "all", "open", "terminal", "closed", "assigned", "exercised", "expired"
]


class SQLiteRepository:
    """High-level accessors for the SQLite persistence layer."""

    def __init__(self, storage: Optional[SQLiteStorage] = None) -> None:
        self._storage = storage or get_storage()

    @property
    def storage(self) -> SQLiteStorage:
        return self._storage

    # Ledger -----------------------------------------------------------------

    def fetch_transactions(
        self,
        *,
        user_id: Optional[str] = None,
        key: Optional[InstrumentKey] = None,
        transaction_ids: Optional[Sequence[int]] = None,
    ) -> List[Transaction]:
        """Return ledger rows in insertion order, optionally narrowed to one instrument key."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        query = ["SELECT * FROM transactions"]
        clauses: list[str] = []
        params: list[object] = []

        if key is not None:
            user_id = key.user_id
            clauses.append("symbol = ?")
            params.append(key.symbol)
            clauses.append("asset_type = ?")
            params.append(key.asset_type)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if transaction_ids is not None:
            if not transaction_ids:
                return []
            placeholders = ", ".join("?" for _ in transaction_ids)
            clauses.append(f"id IN ({placeholders})")
            params.extend(int(value) for value in transaction_ids)

        if clauses:
            query.append("WHERE " + " AND ".join(clauses))
        query.append("ORDER BY id ASC")

        sql = "\n".join(query)
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute(sql, params).fetchall()
        transactions = [_row_to_transaction(row) for row in rows]
        if key is not None:
            # Option and futures discriminators are derived, so the final filter runs here.
            transactions = [
                txn for txn in transactions if InstrumentKey.from_transaction(txn) == key
            ]
        return transactions

    def fetch_cash_transactions(self, user_id: str) -> List[CashTransaction]:
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute(
                "SELECT * FROM cash_transactions WHERE user_id = ? ORDER BY id ASC",
                (user_id,),
            ).fetchall()
        return [
            CashTransaction(
                id=int(row["id"]),
                user_id=row["user_id"],
                transaction_code=row["transaction_code"],
                amount=Decimal(row["amount"]),
                activity_date=date.fromisoformat(row["activity_date"]),
                description=row["description"],
            )
            for row in rows
        ]

    def list_users(self) -> List[str]:
        """Return every user with ledger activity."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute(
                """
                SELECT user_id FROM transactions
                UNION
                SELECT user_id FROM cash_transactions
                ORDER BY user_id
                """
            ).fetchall()
        return [row["user_id"] for row in rows]

    # Lot matching -----------------------------------------------------------

    def save_match_result(self, result: "MatchResult") -> Dict[str, int]:
        """
        Persist the replay of one instrument key in a single SQLite transaction.

        Positions are upserted by ``position_key`` and matches by their opening/closing pair.
        Rows derived from an earlier replay that no longer exist are removed, faults that no
        longer reproduce are resolved, and ledger rows are stamped with their position id.
        Returns the mapping of position keys to row ids.
        """
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        instrument_key = result.key.key_id
        timestamp = utc_timestamp()
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            for position in result.positions:
                _upsert_position(conn, position, instrument_key, timestamp)

            current_keys = [position.position_key for position in result.positions]
            existing = conn.execute(
                "SELECT id, position_key FROM positions WHERE instrument_key = ?",
                (instrument_key,),
            ).fetchall()
            position_ids: Dict[str, int] = {}
            for row in existing:
                if row["position_key"] in current_keys:
                    position_ids[row["position_key"]] = int(row["id"])
                else:
                    conn.execute("DELETE FROM positions WHERE id = ?", (int(row["id"]),))

            current_pairs = set()
            for match in result.matches:
                position_id = position_ids[match.position_key]
                current_pairs.add((match.opening_transaction_id, match.closing_transaction_id))
                conn.execute(
                    """
                    INSERT INTO position_matches (
                        position_id, opening_transaction_id, closing_transaction_id,
                        matched_quantity, opening_price, closing_price, realized_pl, matched_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(opening_transaction_id, closing_transaction_id) DO UPDATE SET
                        position_id = excluded.position_id,
                        matched_quantity = excluded.matched_quantity,
                        opening_price = excluded.opening_price,
                        closing_price = excluded.closing_price,
                        realized_pl = excluded.realized_pl,
                        matched_at = excluded.matched_at
                    """,
                    (
                        position_id,
                        match.opening_transaction_id,
                        match.closing_transaction_id,
                        decimal_to_text(match.matched_quantity),
                        decimal_to_text(match.opening_price),
                        decimal_to_text(match.closing_price),
                        decimal_to_text(match.realized_pl),
                        match.matched_at.isoformat(),
                    ),
                )

            if position_ids:
                placeholders = ", ".join("?" for _ in position_ids)
                stale_rows = conn.execute(
                    f"""
                    SELECT id, opening_transaction_id, closing_transaction_id
                    FROM position_matches WHERE position_id IN ({placeholders})
                    """,
                    list(position_ids.values()),
                ).fetchall()
                for row in stale_rows:
                    pair = (int(row["opening_transaction_id"]), int(row["closing_transaction_id"]))
                    if pair not in current_pairs:
                        conn.execute("DELETE FROM position_matches WHERE id = ?", (int(row["id"]),))

            conn.executemany(
                "UPDATE transactions SET position_id = ? WHERE id = ?",
                [
                    (position_ids[position_key], transaction_id)
                    for transaction_id, position_key in result.transaction_positions.items()
                ],
            )

            fault_ids = []
            for fault in result.faults:
                fault_ids.append(fault.transaction_id)
                conn.execute(
                    """
                    INSERT INTO reconciliation_faults (
                        user_id, transaction_id, instrument_key, kind, shortfall, detail,
                        created_at, resolved_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                    ON CONFLICT(transaction_id, kind) DO UPDATE SET
                        shortfall = excluded.shortfall,
                        detail = excluded.detail,
                        resolved_at = NULL
                    """,
                    (
                        fault.user_id,
                        fault.transaction_id,
                        fault.instrument_key,
                        fault.kind,
                        decimal_to_text(fault.shortfall),
                        fault.detail,
                        timestamp,
                    ),
                )
            resolve_query = [
                "UPDATE reconciliation_faults SET resolved_at = ?",
                "WHERE instrument_key = ? AND resolved_at IS NULL",
            ]
            resolve_params: list[object] = [timestamp, instrument_key]
            if fault_ids:
                resolve_query.append(
                    "AND transaction_id NOT IN (" + ", ".join("?" for _ in fault_ids) + ")"
                )
                resolve_params.extend(fault_ids)
            conn.execute("\n".join(resolve_query), resolve_params)
        return position_ids

    # Positions --------------------------------------------------------------

    def fetch_positions(
        self,
        *,
        user_id: Optional[str] = None,
        status: PositionStatusFilter = "all",
        asset_type: Optional[str] = None,
        symbol: Optional[str] = None,
        opened_at: Optional[date] = None,
        unattached: bool = False,
        strategy_id: Optional[int] = None,
    ) -> List[Position]:
        """Return positions ordered by id, filtered by status, asset type and symbol."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        query = ["SELECT * FROM positions"]
        clauses: list[str] = []
        params: list[object] = []

        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status == "open":
            clauses.append("status = 'open'")
        elif status == "terminal":
            clauses.append("status != 'open'")
        elif status != "all":
            clauses.append("status = ?")
            params.append(status)
        if asset_type is not None:
            clauses.append("asset_type = ?")
            params.append(asset_type)
        if symbol is not None:
            clauses.append("symbol = ?")
            params.append(symbol.strip().upper())
        if opened_at is not None:
            clauses.append("opened_at = ?")
            params.append(opened_at.isoformat())
        if unattached:
            clauses.append("strategy_id IS NULL")
        if strategy_id is not None:
            clauses.append("strategy_id = ?")
            params.append(int(strategy_id))

        if clauses:
            query.append("WHERE " + " AND ".join(clauses))
        query.append("ORDER BY id ASC")

        sql = "\n".join(query)
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_position(row) for row in rows]

    def get_position(self, position_id: int) -> Optional[Position]:
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            row = conn.execute(
                "SELECT * FROM positions WHERE id = ?", (int(position_id),)
            ).fetchone()
        return _row_to_position(row) if row else None

    def fetch_matches(self, position_id: int) -> List[PositionMatch]:
        """Return the FIFO audit trail of a position in matching order."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute(
                """
                SELECT m.*, p.position_key
                FROM position_matches AS m
                JOIN positions AS p ON m.position_id = p.id
                WHERE m.position_id = ?
                ORDER BY m.closing_transaction_id ASC, m.opening_transaction_id ASC
                """,
                (int(position_id),),
            ).fetchall()
        return [_row_to_match(row) for row in rows]

    def update_unrealized_pl(self, values: Dict[int, Decimal]) -> None:
        """Write back live valuations so later fallbacks use the latest known value."""
        if not values:
            return
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        timestamp = utc_timestamp()
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            conn.executemany(
                "UPDATE positions SET unrealized_pl = ?, updated_at = ? WHERE id = ?",
                [
                    (decimal_to_text(value), timestamp, int(position_id))
                    for position_id, value in values.items()
                ],
            )

    # Strategies -------------------------------------------------------------

    def save_strategy(self, strategy: Strategy, positions: Iterable[Position]) -> int:
        """Upsert ``strategy`` by its natural key and attach ``positions`` to it."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        timestamp = utc_timestamp()
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            conn.execute(
                """
                INSERT INTO strategies (
                    strategy_key, user_id, strategy_type, underlying_symbol, direction,
                    confidence, opened_at, expiration_date, legs_json, total_opening_cost,
                    total_closing_proceeds, realized_pl, unrealized_pl, status, closed_at,
                    max_risk, max_profit, breakeven_points, needs_reconciliation, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(strategy_key) DO UPDATE SET
                    strategy_type = excluded.strategy_type,
                    direction = excluded.direction,
                    confidence = excluded.confidence,
                    expiration_date = excluded.expiration_date,
                    legs_json = excluded.legs_json,
                    total_opening_cost = excluded.total_opening_cost,
                    total_closing_proceeds = excluded.total_closing_proceeds,
                    realized_pl = excluded.realized_pl,
                    unrealized_pl = excluded.unrealized_pl,
                    status = excluded.status,
                    closed_at = excluded.closed_at,
                    max_risk = excluded.max_risk,
                    max_profit = excluded.max_profit,
                    breakeven_points = excluded.breakeven_points,
                    needs_reconciliation = excluded.needs_reconciliation,
                    updated_at = excluded.updated_at
                """,
                (
                    strategy.strategy_key,
                    strategy.user_id,
                    strategy.strategy_type,
                    strategy.underlying_symbol,
                    strategy.direction,
                    decimal_to_text(strategy.confidence),
                    strategy.opened_at.isoformat(),
                    strategy.expiration_date.isoformat() if strategy.expiration_date else None,
                    json.dumps([_leg_to_dict(leg) for leg in strategy.legs]),
                    decimal_to_text(strategy.total_opening_cost),
                    decimal_to_text(strategy.total_closing_proceeds),
                    decimal_to_text(strategy.realized_pl),
                    decimal_to_text(strategy.unrealized_pl),
                    strategy.status,
                    strategy.closed_at.isoformat() if strategy.closed_at else None,
                    decimal_to_text(strategy.max_risk),
                    decimal_to_text(strategy.max_profit),
                    json.dumps([format(point, "f") for point in strategy.breakeven_points]),
                    int(strategy.needs_reconciliation),
                    timestamp,
                ),
            )
            row = conn.execute(
                "SELECT id FROM strategies WHERE strategy_key = ?", (strategy.strategy_key,)
            ).fetchone()
            strategy_id = int(row["id"])
            for position in positions:
                if position.id is None:
                    continue
                conn.execute(
                    "UPDATE positions SET strategy_id = ? WHERE id = ?",
                    (strategy_id, int(position.id)),
                )
                conn.execute(
                    "UPDATE transactions SET strategy_id = ? WHERE position_id = ?",
                    (strategy_id, int(position.id)),
                )
        return strategy_id

    def fetch_strategies(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        symbol: Optional[str] = None,
        strategy_type: Optional[str] = None,
    ) -> List[Strategy]:
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        query = ["SELECT * FROM strategies"]
        clauses: list[str] = []
        params: list[object] = []

        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if symbol is not None:
            clauses.append("underlying_symbol = ?")
            params.append(symbol.strip().upper())
        if strategy_type is not None:
            clauses.append("strategy_type = ?")
            params.append(strategy_type)

        if clauses:
            query.append("WHERE " + " AND ".join(clauses))
        query.append("ORDER BY opened_at ASC, id ASC")

        sql = "\n".join(query)
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_strategy(row) for row in rows]

    def get_strategy(self, strategy_id: int) -> Optional[Strategy]:
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            row = conn.execute(
                "SELECT * FROM strategies WHERE id = ?", (int(strategy_id),)
            ).fetchone()
        return _row_to_strategy(row) if row else None

    def delete_orphan_strategies(self, user_id: Optional[str] = None) -> int:
        """Delete strategies whose legs were all removed by a ledger replay."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        query = [
            "DELETE FROM strategies",
            "WHERE id NOT IN (SELECT strategy_id FROM positions WHERE strategy_id IS NOT NULL)",
        ]
        params: list[object] = []
        if user_id is not None:
            query.append("AND user_id = ?")
            params.append(user_id)
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            cursor = conn.execute("\n".join(query), params)
            deleted = cursor.rowcount or 0
        return deleted

    # Snapshots --------------------------------------------------------------

    def upsert_snapshot(self, snapshot: PortfolioSnapshot) -> int:
        """Insert or replace the snapshot for ``(user_id, snapshot_date)``; last write wins."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        breakdown = {
            name: {"count": entry.count, "value": format(entry.value, "f")}
            for name, entry in snapshot.positions_breakdown.items()
        }
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            conn.execute(
                """
                INSERT INTO portfolio_snapshots (
                    user_id, snapshot_date, portfolio_value, net_cash_flow, total_market_value,
                    total_realized_pl, total_unrealized_pl, open_positions_count,
                    total_positions_count, positions_breakdown, stale_symbols,
                    daily_pl_change, daily_pl_percent, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, snapshot_date) DO UPDATE SET
                    portfolio_value = excluded.portfolio_value,
                    net_cash_flow = excluded.net_cash_flow,
                    total_market_value = excluded.total_market_value,
                    total_realized_pl = excluded.total_realized_pl,
                    total_unrealized_pl = excluded.total_unrealized_pl,
                    open_positions_count = excluded.open_positions_count,
                    total_positions_count = excluded.total_positions_count,
                    positions_breakdown = excluded.positions_breakdown,
                    stale_symbols = excluded.stale_symbols,
                    daily_pl_change = excluded.daily_pl_change,
                    daily_pl_percent = excluded.daily_pl_percent,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.user_id,
                    snapshot.snapshot_date.isoformat(),
                    decimal_to_text(snapshot.portfolio_value),
                    decimal_to_text(snapshot.net_cash_flow),
                    decimal_to_text(snapshot.total_market_value),
                    decimal_to_text(snapshot.total_realized_pl),
                    decimal_to_text(snapshot.total_unrealized_pl),
                    snapshot.open_positions_count,
                    snapshot.total_positions_count,
                    json.dumps(breakdown, sort_keys=True),
                    json.dumps(list(snapshot.stale_symbols)),
                    decimal_to_text(snapshot.daily_pl_change),
                    decimal_to_text(snapshot.daily_pl_percent),
                    utc_timestamp(),
                ),
            )
            row = conn.execute(
                "SELECT id FROM portfolio_snapshots WHERE user_id = ? AND snapshot_date = ?",
                (snapshot.user_id, snapshot.snapshot_date.isoformat()),
            ).fetchone()
        return int(row["id"])

    def get_snapshot(self, user_id: str, snapshot_date: date) -> Optional[PortfolioSnapshot]:
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            row = conn.execute(
                "SELECT * FROM portfolio_snapshots WHERE user_id = ? AND snapshot_date = ?",
                (user_id, snapshot_date.isoformat()),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def get_previous_day_snapshot(
        self, user_id: str, snapshot_date: date
    ) -> Optional[PortfolioSnapshot]:
        return self.get_snapshot(user_id, snapshot_date - timedelta(days=1))

    def fetch_snapshots(
        self,
        user_id: str,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[PortfolioSnapshot]:
        """Return a user's snapshots in date order, bounded inclusively by ``start``/``end``."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        query = ["SELECT * FROM portfolio_snapshots", "WHERE user_id = ?"]
        params: list[object] = [user_id]
        if start is not None:
            query.append("AND snapshot_date >= ?")
            params.append(start.isoformat())
        if end is not None:
            query.append("AND snapshot_date <= ?")
            params.append(end.isoformat())
        query.append("ORDER BY snapshot_date ASC")

        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute("\n".join(query), params).fetchall()
        return [_row_to_snapshot(row) for row in rows]

    # Faults -----------------------------------------------------------------

    def fetch_faults(
        self,
        *,
        user_id: Optional[str] = None,
        include_resolved: bool = False,
    ) -> List[ReconciliationFault]:
        """Return the operator queue of reconciliation faults, oldest first."""
        self._storage._ensure_initialized()  # type: ignore[attr-defined]
        query = ["SELECT * FROM reconciliation_faults"]
        clauses: list[str] = []
        params: list[object] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if not include_resolved:
            clauses.append("resolved_at IS NULL")
        if clauses:
            query.append("WHERE " + " AND ".join(clauses))
        query.append("ORDER BY id ASC")

        with self._storage._connect() as conn:  # type: ignore[attr-defined]
            rows = conn.execute("\n".join(query), params).fetchall()
        return [
            ReconciliationFault(
                id=int(row["id"]),
                user_id=row["user_id"],
                transaction_id=int(row["transaction_id"]),
                instrument_key=row["instrument_key"],
                kind=row["kind"],
                shortfall=Decimal(row["shortfall"]),
                detail=row["detail"],
                created_at=row["created_at"],
                resolved_at=row["resolved_at"],
            )
            for row in rows
        ]


def open_repository() -> SQLiteRepository:
    """Repository over the process-wide storage selected by ``POSITIONFLOW_DB_PATH``."""
    return SQLiteRepository(get_storage())


def _upsert_position(
    conn,  # type: ignore[no-untyped-def]
    position: Position,
    instrument_key: str,
    timestamp: str,
) -> None:
    conn.execute(
        """
        INSERT INTO positions (
            position_key, instrument_key, user_id, symbol, asset_type, side, multiplier,
            opened_at, strike_price, expiration_date, option_type, contract_month,
            opening_quantity, current_quantity, average_opening_price, total_cost_basis,
            open_cost_basis, total_closing_amount, realized_pl, unrealized_pl, status,
            opening_transaction_ids, closing_transaction_ids, closed_at,
            needs_reconciliation, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(position_key) DO UPDATE SET
            multiplier = excluded.multiplier,
            opening_quantity = excluded.opening_quantity,
            current_quantity = excluded.current_quantity,
            average_opening_price = excluded.average_opening_price,
            total_cost_basis = excluded.total_cost_basis,
            open_cost_basis = excluded.open_cost_basis,
            total_closing_amount = excluded.total_closing_amount,
            realized_pl = excluded.realized_pl,
            unrealized_pl = CASE
                WHEN excluded.status = 'open' THEN positions.unrealized_pl
                ELSE excluded.unrealized_pl
            END,
            status = excluded.status,
            opening_transaction_ids = excluded.opening_transaction_ids,
            closing_transaction_ids = excluded.closing_transaction_ids,
            closed_at = excluded.closed_at,
            needs_reconciliation = excluded.needs_reconciliation,
            updated_at = excluded.updated_at
        """,
        (
            position.position_key,
            instrument_key,
            position.user_id,
            position.symbol,
            position.asset_type,
            position.side,
            decimal_to_text(position.multiplier),
            position.opened_at.isoformat(),
            decimal_to_text(position.strike_price),
            position.expiration_date.isoformat() if position.expiration_date else None,
            position.option_type,
            position.contract_month,
            decimal_to_text(position.opening_quantity),
            decimal_to_text(position.current_quantity),
            decimal_to_text(position.average_opening_price),
            decimal_to_text(position.total_cost_basis),
            decimal_to_text(position.open_cost_basis),
            decimal_to_text(position.total_closing_amount),
            decimal_to_text(position.realized_pl),
            decimal_to_text(position.unrealized_pl),
            position.status,
            json.dumps(position.opening_transaction_ids),
            json.dumps(position.closing_transaction_ids),
            position.closed_at.isoformat() if position.closed_at else None,
            int(position.needs_reconciliation),
            timestamp,
        ),
    )


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        id=int(row["id"]),
        user_id=row["user_id"],
        activity_date=date.fromisoformat(row["activity_date"]),
        symbol=row["symbol"],
        instrument=row["instrument"],
        description=row["description"],
        transaction_code=row["transaction_code"],
        asset_type=row["asset_type"],
        quantity=Decimal(row["quantity"]),
        price=Decimal(row["price"]),
        amount=Decimal(row["amount"]),
        fees=Decimal(row["fees"]),
        strike_price=_optional_decimal(row["strike_price"]),
        expiration_date=_optional_date(row["expiration_date"]),
        option_type=row["option_type"],
        contract_month=row["contract_month"],
        multiplier=_optional_decimal(row["multiplier"]),
        is_opening=bool(row["is_opening"]),
        is_long=bool(row["is_long"]),
        position_id=row["position_id"],
        strategy_id=row["strategy_id"],
    )


def _row_to_position(row) -> Position:
    return Position(
        id=int(row["id"]),
        position_key=row["position_key"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        asset_type=row["asset_type"],
        side=row["side"],
        multiplier=Decimal(row["multiplier"]),
        opened_at=date.fromisoformat(row["opened_at"]),
        strike_price=_optional_decimal(row["strike_price"]),
        expiration_date=_optional_date(row["expiration_date"]),
        option_type=row["option_type"],
        contract_month=row["contract_month"],
        opening_quantity=Decimal(row["opening_quantity"]),
        current_quantity=Decimal(row["current_quantity"]),
        average_opening_price=Decimal(row["average_opening_price"]),
        total_cost_basis=Decimal(row["total_cost_basis"]),
        open_cost_basis=Decimal(row["open_cost_basis"]),
        total_closing_amount=Decimal(row["total_closing_amount"]),
        realized_pl=Decimal(row["realized_pl"]),
        unrealized_pl=Decimal(row["unrealized_pl"]),
        status=row["status"],
        opening_transaction_ids=json.loads(row["opening_transaction_ids"]),
        closing_transaction_ids=json.loads(row["closing_transaction_ids"]),
        closed_at=_optional_date(row["closed_at"]),
        needs_reconciliation=bool(row["needs_reconciliation"]),
        strategy_id=row["strategy_id"],
    )


def _row_to_match(row) -> PositionMatch:
    return PositionMatch(
        id=int(row["id"]),
        position_id=int(row["position_id"]),
        position_key=row["position_key"],
        opening_transaction_id=int(row["opening_transaction_id"]),
        closing_transaction_id=int(row["closing_transaction_id"]),
        matched_quantity=Decimal(row["matched_quantity"]),
        opening_price=Decimal(row["opening_price"]),
        closing_price=Decimal(row["closing_price"]),
        realized_pl=Decimal(row["realized_pl"]),
        matched_at=date.fromisoformat(row["matched_at"]),
    )


def _leg_to_dict(leg: StrategyLeg) -> dict:
    return {
        "position_key": leg.position_key,
        "position_id": leg.position_id,
        "asset_type": leg.asset_type,
        "side": leg.side,
        "quantity": format(leg.quantity, "f"),
        "opening_price": format(leg.opening_price, "f"),
        "status": leg.status,
        "strike": format(leg.strike, "f") if leg.strike is not None else None,
        "expiration": leg.expiration.isoformat() if leg.expiration else None,
        "option_type": leg.option_type,
    }


def _leg_from_dict(data: dict) -> StrategyLeg:
    return StrategyLeg(
        position_key=data["position_key"],
        position_id=data.get("position_id"),
        asset_type=data["asset_type"],
        side=data["side"],
        quantity=Decimal(data["quantity"]),
        opening_price=Decimal(data["opening_price"]),
        status=data["status"],
        strike=_optional_decimal(data.get("strike")),
        expiration=_optional_date(data.get("expiration")),
        option_type=data.get("option_type"),
    )


def _row_to_strategy(row) -> Strategy:
    return Strategy(
        id=int(row["id"]),
        strategy_key=row["strategy_key"],
        user_id=row["user_id"],
        strategy_type=row["strategy_type"],
        underlying_symbol=row["underlying_symbol"],
        direction=row["direction"],
        confidence=Decimal(row["confidence"]),
        opened_at=date.fromisoformat(row["opened_at"]),
        expiration_date=_optional_date(row["expiration_date"]),
        legs=tuple(_leg_from_dict(item) for item in json.loads(row["legs_json"])),
        total_opening_cost=Decimal(row["total_opening_cost"]),
        total_closing_proceeds=Decimal(row["total_closing_proceeds"]),
        realized_pl=Decimal(row["realized_pl"]),
        unrealized_pl=Decimal(row["unrealized_pl"]),
        status=row["status"],
        closed_at=_optional_date(row["closed_at"]),
        max_risk=_optional_decimal(row["max_risk"]),
        max_profit=_optional_decimal(row["max_profit"]),
        breakeven_points=tuple(Decimal(point) for point in json.loads(row["breakeven_points"])),
        needs_reconciliation=bool(row["needs_reconciliation"]),
    )


def _row_to_snapshot(row) -> PortfolioSnapshot:
    breakdown = {
        name: AssetBreakdown(count=int(entry["count"]), value=Decimal(entry["value"]))
        for name, entry in json.loads(row["positions_breakdown"]).items()
    }
    return PortfolioSnapshot(
        id=int(row["id"]),
        user_id=row["user_id"],
        snapshot_date=date.fromisoformat(row["snapshot_date"]),
        portfolio_value=Decimal(row["portfolio_value"]),
        net_cash_flow=Decimal(row["net_cash_flow"]),
        total_market_value=Decimal(row["total_market_value"]),
        total_realized_pl=Decimal(row["total_realized_pl"]),
        total_unrealized_pl=Decimal(row["total_unrealized_pl"]),
        open_positions_count=int(row["open_positions_count"]),
        total_positions_count=int(row["total_positions_count"]),
        positions_breakdown=breakdown,
        stale_symbols=tuple(json.loads(row["stale_symbols"])),
        daily_pl_change=_optional_decimal(row["daily_pl_change"]),
        daily_pl_percent=_optional_decimal(row["daily_pl_percent"]),
    )
