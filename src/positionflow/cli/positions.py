"""Inspect reconstructed positions and their FIFO match audit trail."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

import click
from rich.console import Console
from rich.table import Table

from ..core.models import Position, PositionMatch
from ..services.display import format_currency, format_dte, format_instrument, format_quantity
from ..services.json_serializer import serialize_match, serialize_position
from .common import format_date, format_option, get_repository

StatusChoice = click.Choice(
    ["all", "open", "terminal", "closed", "assigned", "exercised", "expired"]
)
AssetTypeChoice = click.Choice(["stock", "option", "crypto", "futures"])


def _build_position_table(positions: Sequence[Position]) -> Table:
    table = Table(title="Positions", expand=True)
    table.add_column("ID", justify="right")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Instrument", style="magenta", no_wrap=True)
    table.add_column("Type", no_wrap=True)
    table.add_column("Side", no_wrap=True)
    table.add_column("Status", style="yellow", no_wrap=True)
    table.add_column("Opened", style="cyan")
    table.add_column("Closed", style="cyan")
    table.add_column("DTE", justify="right")
    table.add_column("Open Qty", justify="right")
    table.add_column("Current Qty", justify="right")
    table.add_column("Avg Price", justify="right")
    table.add_column("Cost Basis", justify="right")
    table.add_column("Realized P/L", justify="right")
    table.add_column("Unrealized P/L", justify="right")

    total_realized = Decimal("0")
    total_unrealized = Decimal("0")
    for position in positions:
        flag = " !" if position.needs_reconciliation else ""
        table.add_row(
            str(position.id),
            position.user_id,
            format_instrument(position),
            position.asset_type,
            position.side,
            position.status.upper() + flag,
            format_date(position.opened_at),
            format_date(position.closed_at),
            format_dte(position),
            format_quantity(position.opening_quantity),
            format_quantity(position.current_quantity),
            format_currency(position.average_opening_price),
            format_currency(position.total_cost_basis),
            format_currency(position.realized_pl),
            format_currency(position.unrealized_pl) if position.is_open else "--",
        )
        total_realized += position.realized_pl
        if position.is_open:
            total_unrealized += position.unrealized_pl

    table.add_section()
    table.add_row(
        "Total",
        *([""] * 12),
        format_currency(total_realized),
        format_currency(total_unrealized),
    )
    return table


def _build_match_table(position: Position, rows: Sequence[PositionMatch]) -> Table:
    table = Table(title=f"Matches for position {position.id} ({format_instrument(position)})")
    table.add_column("Matched", style="cyan")
    table.add_column("Opening Txn", justify="right")
    table.add_column("Closing Txn", justify="right")
    table.add_column("Quantity", justify="right")
    table.add_column("Open Price", justify="right")
    table.add_column("Close Price", justify="right")
    table.add_column("Realized P/L", justify="right")
    for row in rows:
        table.add_row(
            format_date(row.matched_at),
            str(row.opening_transaction_id),
            str(row.closing_transaction_id),
            format_quantity(row.matched_quantity),
            format_currency(row.opening_price),
            format_currency(row.closing_price),
            format_currency(row.realized_pl),
        )
    return table


@click.command()
@click.option("--user", "user_id", help="Filter by user id")
@click.option(
    "--status",
    type=StatusChoice,
    default="all",
    help="Filter by position status (default: all)",
)
@click.option("--asset-type", type=AssetTypeChoice, help="Filter by asset type")
@click.option("--symbol", help="Filter by underlying symbol")
@format_option
def positions(
    user_id: Optional[str],
    status: str,
    asset_type: Optional[str],
    symbol: Optional[str],
    output_format: str,
) -> None:
    """List positions rebuilt from the ledger."""
    console = Console()
    rows = get_repository().fetch_positions(
        user_id=user_id or None,
        status=status,  # type: ignore[arg-type]
        asset_type=asset_type,
        symbol=symbol or None,
    )
    if output_format == "json":
        console.print_json(data={"positions": [serialize_position(row) for row in rows]})
        return
    if not rows:
        console.print("[yellow]No positions match the requested filters.[/yellow]")
        return
    console.print(_build_position_table(rows))


@click.command()
@click.argument("position_id", type=int)
@format_option
def matches(position_id: int, output_format: str) -> None:
    """Show the FIFO match audit trail of POSITION_ID."""
    console = Console()
    repository = get_repository()
    position = repository.get_position(position_id)
    if position is None:
        raise click.ClickException(f"Position {position_id} not found.")
    rows = repository.fetch_matches(position_id)
    if output_format == "json":
        console.print_json(
            data={
                "position": serialize_position(position),
                "matches": [serialize_match(row) for row in rows],
            }
        )
        return
    if not rows:
        console.print("[yellow]Position has no matches yet.[/yellow]")
        return
    console.print(_build_match_table(position, rows))
