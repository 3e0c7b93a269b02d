"""
Append validated ledger rows and reconcile the instruments they touch.

Input is a JSON document of the form ``{"transactions": [...], "cash_transactions": [...]}``
(a bare list is read as transactions). Every row is validated against the ledger models before
anything is written.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..core.models import CashTransaction, Transaction
from ..services.engine import ReconciliationEngine, ReconciliationReport
from ..services.json_serializer import serialize_fault
from .common import format_option, get_repository


def _load_payload(path: Path) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc
    if isinstance(data, list):
        return data, []
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain a JSON object or list.")
    return list(data.get("transactions") or []), list(data.get("cash_transactions") or [])


def _validate_rows(
    rows: Sequence[Dict[str, Any]],
    model,  # type: ignore[no-untyped-def]
    user_id: Optional[str],
    label: str,
) -> List[Any]:
    validated = []
    for index, row in enumerate(rows, start=1):
        if user_id and not row.get("user_id"):
            row = {**row, "user_id": user_id}
        try:
            validated.append(model.model_validate(row))
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ())) or "row"
            raise click.ClickException(
                f"Invalid {label} #{index}: {location}: {first.get('msg')}"
            ) from exc
    return validated


def _print_report(
    console: Console,
    report: ReconciliationReport,
    *,
    appended: int,
    cash_appended: int,
    output_format: str,
) -> None:
    warnings = [f"{key.display_name}: {exc}" for key, exc in report.errors]
    if output_format == "json":
        console.print_json(
            data={
                "transactions": appended,
                "cash_transactions": cash_appended,
                "instruments": len(report.results),
                "positions": report.position_count,
                "matches": report.match_count,
                "strategies": len(report.strategies),
                "faults": [serialize_fault(fault) for fault in report.faults],
                "warnings": warnings,
            }
        )
        return

    table = Table(title="Reconciliation Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Transactions appended", str(appended))
    table.add_row("Cash rows appended", str(cash_appended))
    table.add_row("Instruments reconciled", str(len(report.results)))
    table.add_row("Positions", str(report.position_count))
    table.add_row("Matches", str(report.match_count))
    table.add_row("Strategies", str(len(report.strategies)))
    table.add_row("Faults", str(len(report.faults)))
    console.print(table)

    for fault in report.faults:
        console.print(f"[yellow]Fault:[/yellow] {fault.detail}")
    if warnings:
        console.print("\n[red]Warnings:[/red]")
        for message in warnings:
            console.print(f"- {message}")


@click.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", "user_id", help="User id applied to rows that do not carry one")
@format_option
def ingest(path: Path, user_id: Optional[str], output_format: str) -> None:
    """Append ledger rows from PATH and reconcile the affected instruments."""
    console = Console()
    raw_transactions, raw_cash = _load_payload(path)
    transactions = _validate_rows(raw_transactions, Transaction, user_id, "transaction")
    cash_rows = _validate_rows(raw_cash, CashTransaction, user_id, "cash transaction")

    repository = get_repository()
    cash_stored = repository.storage.append_cash_transactions(cash_rows)
    engine = ReconciliationEngine(repository)
    report = asyncio.run(engine.process_transactions(transactions))
    _print_report(
        console,
        report,
        appended=len(transactions),
        cash_appended=len(cash_stored),
        output_format=output_format,
    )


@click.command()
@click.option("--user", "user_id", help="Only replay this user's ledger")
@format_option
def match(user_id: Optional[str], output_format: str) -> None:
    """Replay the stored ledger through FIFO matching and strategy detection."""
    console = Console()
    engine = ReconciliationEngine(get_repository())
    if user_id:
        report = asyncio.run(engine.reconcile_user(user_id))
    else:
        report = asyncio.run(engine.reconcile_all())
    _print_report(console, report, appended=0, cash_appended=0, output_format=output_format)
