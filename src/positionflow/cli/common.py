"""Helpers shared by the CLI subcommands."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

import click

from ..persistence import SQLiteRepository, open_repository

FormatChoice = click.Choice(["table", "json"])
DateInput = Optional[datetime]
DATE_TYPE = click.DateTime(formats=["%Y-%m-%d"])

format_option = click.option(
    "--format",
    "output_format",
    type=FormatChoice,
    default="table",
    help="Output format (default: table)",
)


def parse_date(value: DateInput) -> Optional[date]:
    if value is None:
        return None
    return value.date()


def format_date(value: Optional[date]) -> str:
    return value.isoformat() if value else "--"


def get_repository() -> SQLiteRepository:
    return open_repository()
