"""
Command-line interface for positionflow.

Provides the CLI command group and registers individual subcommands.
"""

from __future__ import annotations

from typing import Optional

import click

from .. import __version__
from ..logging_config import configure_logging
from .faults import faults
from .ingest import ingest, match
from .positions import matches, positions
from .snapshots import snapshot, snapshots
from .strategies import repair_strategies, strategies


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    default=None,
    help="Log level (default: $POSITIONFLOW_LOG_LEVEL or WARNING)",
)
@click.option("--log-json", is_flag=True, help="Emit log events as JSON lines")
def main(log_level: Optional[str], log_json: bool):
    """PositionFlow - rebuild positions, strategies and P&L from a brokerage ledger."""
    try:
        configure_logging(log_level, json_output=log_json)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--log-level") from exc


# Register CLI subcommands
main.add_command(ingest)
main.add_command(match)
main.add_command(positions)
main.add_command(matches)
main.add_command(strategies)
main.add_command(repair_strategies)
main.add_command(snapshot)
main.add_command(snapshots)
main.add_command(faults)


if __name__ == "__main__":
    main()
