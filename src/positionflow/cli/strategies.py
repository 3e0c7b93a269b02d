"""List detected option strategies and run the strategy repair operation."""

from __future__ import annotations

from typing import Optional, Sequence

import click
from rich.console import Console
from rich.table import Table

from ..core.models import Strategy
from ..services.display import format_breakevens, format_currency, format_legs
from ..services.json_serializer import serialize_strategy
from ..services.strategy_detection import recompute_strategies
from .common import format_date, format_option, get_repository

StrategyStatusChoice = click.Choice(["open", "closed", "expired", "assigned"])


def _build_strategy_table(rows: Sequence[Strategy], title: str = "Strategies") -> Table:
    table = Table(title=title, expand=True)
    table.add_column("ID", justify="right")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Symbol", style="magenta", no_wrap=True)
    table.add_column("Strategy", no_wrap=True)
    table.add_column("Direction", no_wrap=True)
    table.add_column("Legs")
    table.add_column("Status", style="yellow", no_wrap=True)
    table.add_column("Opened", style="cyan")
    table.add_column("Closed", style="cyan")
    table.add_column("Opening Cost", justify="right")
    table.add_column("Realized P/L", justify="right")
    table.add_column("Max Risk", justify="right")
    table.add_column("Max Profit", justify="right")
    table.add_column("Breakeven", justify="right")
    for strategy in rows:
        label = strategy.strategy_type
        if strategy.strategy_type == "custom":
            label = f"custom ({strategy.confidence})"
        table.add_row(
            str(strategy.id),
            strategy.user_id,
            strategy.underlying_symbol,
            label,
            strategy.direction or "--",
            format_legs(strategy.legs),
            strategy.status.upper() + (" !" if strategy.needs_reconciliation else ""),
            format_date(strategy.opened_at),
            format_date(strategy.closed_at),
            format_currency(strategy.total_opening_cost),
            format_currency(strategy.realized_pl),
            format_currency(strategy.max_risk),
            format_currency(strategy.max_profit),
            format_breakevens(strategy),
        )
    return table


@click.command()
@click.option("--user", "user_id", help="Filter by user id")
@click.option("--status", type=StrategyStatusChoice, help="Filter by strategy status")
@click.option("--symbol", help="Filter by underlying symbol")
@format_option
def strategies(
    user_id: Optional[str],
    status: Optional[str],
    symbol: Optional[str],
    output_format: str,
) -> None:
    """List detected option strategies with their legs and risk metrics."""
    console = Console()
    rows = get_repository().fetch_strategies(
        user_id=user_id or None, status=status, symbol=symbol or None
    )
    if output_format == "json":
        console.print_json(data={"strategies": [serialize_strategy(row) for row in rows]})
        return
    if not rows:
        console.print("[yellow]No strategies match the requested filters.[/yellow]")
        return
    console.print(_build_strategy_table(rows))


@click.command("repair-strategies")
@click.option("--user", "user_id", help="Only repair this user's strategies")
@format_option
def repair_strategies(user_id: Optional[str], output_format: str) -> None:
    """Recompute every strategy's status and P&L from its current legs."""
    console = Console()
    rows = recompute_strategies(get_repository(), user_id or None)
    if output_format == "json":
        console.print_json(data={"strategies": [serialize_strategy(row) for row in rows]})
        return
    console.print(f"[green]Recomputed {len(rows)} strategies.[/green]")
    if rows:
        console.print(_build_strategy_table(rows, title="Recomputed Strategies"))
