"""Show the operator queue of reconciliation faults."""

from __future__ import annotations

from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ..services.display import format_quantity
from ..services.json_serializer import serialize_fault
from .common import format_option, get_repository


@click.command()
@click.option("--user", "user_id", help="Filter by user id")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved faults")
@format_option
def faults(user_id: Optional[str], include_resolved: bool, output_format: str) -> None:
    """List ledger rows that could not be reconciled."""
    console = Console()
    rows = get_repository().fetch_faults(
        user_id=user_id or None, include_resolved=include_resolved
    )
    if output_format == "json":
        console.print_json(data={"faults": [serialize_fault(row) for row in rows]})
        return
    if not rows:
        console.print("[green]No reconciliation faults.[/green]")
        return

    table = Table(title="Reconciliation Faults", expand=True)
    table.add_column("ID", justify="right")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Transaction", justify="right")
    table.add_column("Kind", style="yellow", no_wrap=True)
    table.add_column("Shortfall", justify="right")
    table.add_column("Detail")
    table.add_column("Created", style="cyan")
    table.add_column("Resolved", style="cyan")
    for row in rows:
        table.add_row(
            str(row.id),
            row.user_id,
            str(row.transaction_id),
            row.kind,
            format_quantity(row.shortfall),
            row.detail,
            row.created_at or "--",
            row.resolved_at or "--",
        )
    console.print(table)
