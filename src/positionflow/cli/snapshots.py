"""Generate and list portfolio valuation snapshots."""

from __future__ import annotations

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

import click
from rich.console import Console
from rich.table import Table

from ..core.models import PortfolioSnapshot
from ..errors import SnapshotWriteError
from ..services.display import format_currency, format_percent
from ..services.json_serializer import serialize_snapshot
from ..services.quotes import HttpQuoteProvider, QuoteProvider, StaticQuoteProvider
from ..services.snapshots import generate_snapshot
from .common import DATE_TYPE, DateInput, format_date, format_option, get_repository, parse_date


def _load_provider(quotes_path: Optional[Path]) -> QuoteProvider:
    if quotes_path is None:
        try:
            return HttpQuoteProvider()
        except ValueError as exc:
            raise click.ClickException(f"{exc} Or pass --quotes FILE.") from exc
    try:
        data = json.loads(quotes_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{quotes_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise click.ClickException(f"{quotes_path} must map symbols to prices.")
    return StaticQuoteProvider.from_prices(data)


def _build_snapshot_table(rows: Sequence[PortfolioSnapshot]) -> Table:
    table = Table(title="Portfolio Snapshots", expand=True)
    table.add_column("Date", style="cyan")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Portfolio Value", justify="right")
    table.add_column("Net Cash", justify="right")
    table.add_column("Market Value", justify="right")
    table.add_column("Realized P/L", justify="right")
    table.add_column("Unrealized P/L", justify="right")
    table.add_column("Daily Change", justify="right")
    table.add_column("Daily %", justify="right")
    table.add_column("Open / Total", justify="right")
    table.add_column("Stale", style="yellow")
    for row in rows:
        table.add_row(
            format_date(row.snapshot_date),
            row.user_id,
            str(row.portfolio_money),
            format_currency(row.net_cash_flow),
            format_currency(row.total_market_value),
            format_currency(row.total_realized_pl),
            format_currency(row.total_unrealized_pl),
            format_currency(row.daily_pl_change),
            format_percent(row.daily_pl_percent),
            f"{row.open_positions_count} / {row.total_positions_count}",
            ", ".join(row.stale_symbols) or "--",
        )
    return table


def _build_breakdown_table(row: PortfolioSnapshot) -> Table:
    table = Table(title="Open Positions by Asset Type")
    table.add_column("Asset Type", style="magenta")
    table.add_column("Count", justify="right")
    table.add_column("Value", justify="right")
    for name, entry in row.positions_breakdown.items():
        table.add_row(name, str(entry.count), format_currency(entry.value))
    return table


@click.command()
@click.option("--user", "user_id", required=True, help="User id to value")
@click.option("--date", "snapshot_date", type=DATE_TYPE, help="Snapshot date (default: today)")
@click.option(
    "--quotes",
    "quotes_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file mapping quote symbols to prices; defaults to the HTTP quote provider",
)
@format_option
def snapshot(
    user_id: str,
    snapshot_date: DateInput,
    quotes_path: Optional[Path],
    output_format: str,
) -> None:
    """Value USER's open positions and record the day's portfolio snapshot."""
    console = Console()
    provider = _load_provider(quotes_path)
    target_date = parse_date(snapshot_date) or date.today()
    try:
        result = asyncio.run(
            generate_snapshot(get_repository(), provider, user_id, target_date)
        )
    except SnapshotWriteError as exc:
        raise click.ClickException(str(exc)) from exc

    if output_format == "json":
        console.print_json(data={"snapshot": serialize_snapshot(result)})
        return
    console.print(_build_snapshot_table([result]))
    console.print(_build_breakdown_table(result))
    if result.is_stale:
        console.print(
            "[yellow]Valued from last known P&L (no quote): "
            + ", ".join(result.stale_symbols)
            + "[/yellow]"
        )


@click.command()
@click.option("--user", "user_id", required=True, help="User id")
@click.option("--start", type=DATE_TYPE, help="First snapshot date (YYYY-MM-DD)")
@click.option("--end", type=DATE_TYPE, help="Last snapshot date (YYYY-MM-DD)")
@format_option
def snapshots(
    user_id: str,
    start: DateInput,
    end: DateInput,
    output_format: str,
) -> None:
    """List USER's stored snapshots in date order."""
    console = Console()
    rows = get_repository().fetch_snapshots(user_id, start=parse_date(start), end=parse_date(end))
    if output_format == "json":
        console.print_json(data={"snapshots": [serialize_snapshot(row) for row in rows]})
        return
    if not rows:
        console.print("[yellow]No snapshots found for the requested range.[/yellow]")
        return
    console.print(_build_snapshot_table(rows))
