"""Portfolio valuation snapshots.

A snapshot values every open position of a user at current quotes, adds the cash ledger and
records the result for ``(user_id, snapshot_date)``. Generating a snapshot twice for the same day
replaces the earlier one.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog

from ..core.instruments import FUTURES_MARGIN_CODES
from ..core.models import ZERO, AssetBreakdown, CashTransaction, PortfolioSnapshot, Position
from ..errors import SnapshotWriteError
from ..persistence import SQLiteRepository
from .pnl import quantize_money, value_position
from .quotes import QuoteProvider, QuoteRequest, fetch_quotes

logger = structlog.get_logger(__name__)

SNAPSHOT_WRITE_ATTEMPTS = 4
SNAPSHOT_BACKOFF_SECONDS = 0.1
PERCENT_QUANTIZER = Decimal("0.01")

BREAKDOWN_KEYS: Dict[str, str] = {
    "stock": "stocks",
    "option": "options",
    "crypto": "crypto",
    "futures": "futures",
}


def net_cash_flow(transactions: Sequence[CashTransaction]) -> Decimal:
    """Sum of the cash ledger; futures margin postings move between accounts and are excluded."""
    return quantize_money(
        sum(
            (
                txn.amount
                for txn in transactions
                if txn.transaction_code not in FUTURES_MARGIN_CODES
            ),
            ZERO,
        )
    )


def effective_realized_pl(position: Position) -> Decimal:
    """
    Realized P&L of a terminal position as counted in snapshots.

    Expired short positions recorded before expirations were matched at a zero price carry
    ``realized_pl == 0`` even though the whole credit was kept. For those rows the opening credit
    is the realized P&L. This is the only place the correction is applied.
    """
    if (
        position.status == "expired"
        and position.side == "short"
        and position.realized_pl == 0
        and position.total_cost_basis != 0
    ):
        return abs(position.total_cost_basis)
    return position.realized_pl


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


async def _write_snapshot(
    repository: SQLiteRepository,
    snapshot: PortfolioSnapshot,
    *,
    attempts: int,
    backoff_seconds: float,
) -> int:
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.to_thread(repository.upsert_snapshot, snapshot)
        except sqlite3.OperationalError as exc:
            if not _is_transient(exc):
                raise
            if attempt == attempts:
                logger.error(
                    "snapshots.write_failed",
                    user_id=snapshot.user_id,
                    snapshot_date=snapshot.snapshot_date.isoformat(),
                    attempts=attempts,
                    error=str(exc),
                )
                raise SnapshotWriteError(
                    snapshot.user_id, snapshot.snapshot_date.isoformat(), attempts
                ) from exc
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "snapshots.write_retry",
                user_id=snapshot.user_id,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
    raise SnapshotWriteError(snapshot.user_id, snapshot.snapshot_date.isoformat(), attempts)


def _daily_change(
    portfolio_value: Decimal, previous: Optional[PortfolioSnapshot]
) -> tuple[Optional[Decimal], Optional[Decimal]]:
    if previous is None:
        return None, None
    change = quantize_money(portfolio_value - previous.portfolio_value)
    if previous.portfolio_value == 0:
        return change, None
    percent = (change / abs(previous.portfolio_value) * 100).quantize(PERCENT_QUANTIZER)
    return change, percent


async def generate_snapshot(
    repository: SQLiteRepository,
    provider: QuoteProvider,
    user_id: str,
    snapshot_date: date,
    *,
    write_attempts: int = SNAPSHOT_WRITE_ATTEMPTS,
    backoff_seconds: float = SNAPSHOT_BACKOFF_SECONDS,
) -> PortfolioSnapshot:
    """Value ``user_id``'s portfolio at current quotes and upsert the snapshot for the day."""
    positions = await asyncio.to_thread(repository.fetch_positions, user_id=user_id)
    positions = sorted(positions, key=lambda position: position.id or 0)
    cash = await asyncio.to_thread(repository.fetch_cash_transactions, user_id)

    open_positions = [position for position in positions if position.is_open]
    terminal_positions = [position for position in positions if position.is_terminal]

    requests = {position.id: QuoteRequest.for_position(position) for position in open_positions}
    quotes = await fetch_quotes(provider, requests.values())

    totals: Dict[str, List] = {key: [0, ZERO] for key in BREAKDOWN_KEYS.values()}
    total_market_value = ZERO
    total_unrealized = ZERO
    stale_symbols: List[str] = []
    live_values: Dict[int, Decimal] = {}

    for position in open_positions:
        request = requests[position.id]
        valuation = value_position(position, quotes.price_for(request.quote_symbol))
        if valuation.stale:
            if request.quote_symbol not in stale_symbols:
                stale_symbols.append(request.quote_symbol)
        elif position.id is not None:
            live_values[position.id] = valuation.unrealized_pl
        total_market_value += valuation.market_value
        total_unrealized += valuation.unrealized_pl
        bucket = totals[BREAKDOWN_KEYS.get(position.asset_type, position.asset_type)]
        bucket[0] += 1
        bucket[1] += valuation.market_value

    total_realized = sum(
        (effective_realized_pl(position) for position in terminal_positions), ZERO
    )
    cash_flow = net_cash_flow(cash)
    portfolio_value = quantize_money(cash_flow + total_market_value)
    previous = await asyncio.to_thread(
        repository.get_previous_day_snapshot, user_id, snapshot_date
    )
    daily_change, daily_percent = _daily_change(portfolio_value, previous)

    snapshot = PortfolioSnapshot(
        user_id=user_id,
        snapshot_date=snapshot_date,
        portfolio_value=portfolio_value,
        net_cash_flow=cash_flow,
        total_market_value=quantize_money(total_market_value),
        total_realized_pl=quantize_money(total_realized),
        total_unrealized_pl=quantize_money(total_unrealized),
        open_positions_count=len(open_positions),
        total_positions_count=len(positions),
        positions_breakdown={
            name: AssetBreakdown(count=count, value=quantize_money(value))
            for name, (count, value) in totals.items()
        },
        stale_symbols=tuple(stale_symbols),
        daily_pl_change=daily_change,
        daily_pl_percent=daily_percent,
    )

    snapshot_id = await _write_snapshot(
        repository, snapshot, attempts=write_attempts, backoff_seconds=backoff_seconds
    )
    await asyncio.to_thread(repository.update_unrealized_pl, live_values)
    logger.info(
        "snapshots.generated",
        user_id=user_id,
        snapshot_date=snapshot_date.isoformat(),
        portfolio_value=str(snapshot.portfolio_value),
        stale=len(stale_symbols),
    )
    return replace(snapshot, id=snapshot_id)


async def generate_snapshots(
    repository: SQLiteRepository,
    provider: QuoteProvider,
    snapshot_date: date,
    user_ids: Optional[Sequence[str]] = None,
) -> List[PortfolioSnapshot]:
    """Generate snapshots for several users concurrently; a failing user does not stop others."""
    if user_ids is None:
        user_ids = await asyncio.to_thread(repository.list_users)
    results = await asyncio.gather(
        *(generate_snapshot(repository, provider, user_id, snapshot_date) for user_id in user_ids),
        return_exceptions=True,
    )
    snapshots: List[PortfolioSnapshot] = []
    for user_id, outcome in zip(user_ids, results):
        if isinstance(outcome, BaseException):
            logger.error("snapshots.user_failed", user_id=user_id, error=str(outcome))
            continue
        snapshots.append(outcome)
    return snapshots
