"""CLI integration tests for positionflow commands."""

import json

import pytest
from click.testing import CliRunner

from positionflow import __version__
from positionflow.cli.commands import main as positionflow_cli
from positionflow.services.quotes import QUOTE_URL_ENV_VAR

VERTICAL_PAYLOAD = {
    "transactions": [
        {
            "activity_date": "2024-01-02",
            "symbol": "aapl",
            "description": "AAPL 02/16/2024 Call $100.00",
            "transaction_code": "BTO",
            "asset_type": "option",
            "quantity": "1",
            "price": "5",
            "amount": "-500",
            "strike_price": "100",
            "expiration_date": "2024-02-16",
            "option_type": "C",
            "is_opening": True,
            "is_long": True,
        },
        {
            "activity_date": "2024-01-02",
            "symbol": "AAPL",
            "description": "AAPL 02/16/2024 Call $105.00",
            "transaction_code": "STO",
            "asset_type": "option",
            "quantity": "-1",
            "price": "2",
            "amount": "200",
            "strike_price": "105",
            "expiration_date": "2024-02-16",
            "option_type": "C",
            "is_opening": True,
            "is_long": False,
        },
    ],
    "cash_transactions": [
        {"transaction_code": "DEP", "amount": "1000", "activity_date": "2024-01-01"},
    ],
}

OVER_CLOSE_PAYLOAD = [
    {
        "user_id": "bob",
        "activity_date": "2024-01-02",
        "symbol": "MSFT",
        "transaction_code": "BTO",
        "asset_type": "stock",
        "quantity": "1",
        "price": "400",
        "amount": "-400",
        "is_opening": True,
        "is_long": True,
    },
    {
        "user_id": "bob",
        "activity_date": "2024-01-03",
        "symbol": "MSFT",
        "transaction_code": "STC",
        "asset_type": "stock",
        "quantity": "-3",
        "price": "410",
        "amount": "1230",
        "is_opening": False,
        "is_long": False,
    },
]


def _write_json(directory, name, payload):
    path = directory / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _invoke(*args):
    runner = CliRunner()
    return runner.invoke(positionflow_cli, [str(arg) for arg in args])


@pytest.fixture
def ingested(db_path, tmp_path):
    """Ingest the vertical spread payload into a fresh database."""
    path = _write_json(tmp_path, "ledger.json", VERTICAL_PAYLOAD)
    result = _invoke("ingest", path, "--user", "alice", "--format", "json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_cli_help_lists_all_commands():
    """Root CLI help should list all registered subcommands."""
    result = _invoke("--help")

    assert result.exit_code == 0
    for command in (
        "ingest",
        "match",
        "positions",
        "matches",
        "strategies",
        "repair-strategies",
        "snapshot",
        "snapshots",
        "faults",
    ):
        assert command in result.output


def test_cli_version():
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_rejects_unknown_log_level(db_path):
    result = _invoke("--log-level", "chatty", "positions")

    assert result.exit_code == 2
    assert "Unknown log level" in result.output


def test_ingest_reports_reconciliation_summary(ingested):
    assert ingested == {
        "transactions": 2,
        "cash_transactions": 1,
        "instruments": 2,
        "positions": 2,
        "matches": 0,
        "strategies": 1,
        "faults": [],
        "warnings": [],
    }


def test_ingest_table_output(db_path, tmp_path):
    path = _write_json(tmp_path, "ledger.json", VERTICAL_PAYLOAD)

    result = _invoke("ingest", path, "--user", "alice")

    assert result.exit_code == 0, result.output
    assert "Reconciliation Summary" in result.output
    assert "Transactions appended" in result.output


def test_ingest_rejects_invalid_rows(db_path, tmp_path):
    payload = {"transactions": [{**VERTICAL_PAYLOAD["transactions"][0], "strike_price": None}]}
    path = _write_json(tmp_path, "bad.json", payload)

    result = _invoke("ingest", path, "--user", "alice")

    assert result.exit_code == 1
    assert "Invalid transaction #1" in result.output
    assert _invoke("positions", "--format", "json").output.count('"id"') == 0


def test_ingest_rejects_malformed_json(db_path, tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    result = _invoke("ingest", path)

    assert result.exit_code == 1
    assert "is not valid JSON" in result.output


def test_positions_json_and_filters(ingested):
    result = _invoke("positions", "--user", "alice", "--format", "json")
    terminal = _invoke("positions", "--status", "terminal", "--format", "json")

    assert result.exit_code == 0, result.output
    rows = json.loads(result.output)["positions"]
    by_side = {row["side"]: row for row in rows}
    assert by_side["long"]["total_cost_basis"] == "-500"
    assert by_side["short"]["total_cost_basis"] == "200"
    assert all(row["strategy_id"] is not None for row in rows)
    assert json.loads(terminal.output) == {"positions": []}


def test_positions_table_and_empty_message(ingested):
    table = _invoke("positions", "--user", "alice")
    empty = _invoke("positions", "--user", "nobody")

    assert table.exit_code == 0
    assert "Positions" in table.output
    assert "No positions match the requested filters." in empty.output


def test_matches_command(ingested):
    missing = _invoke("matches", "999")
    found = _invoke("matches", "1", "--format", "json")

    assert missing.exit_code == 1
    assert "Position 999 not found." in missing.output
    data = json.loads(found.output)
    assert data["position"]["id"] == 1
    assert data["matches"] == []


def test_strategies_and_repair(ingested):
    listed = _invoke("strategies", "--user", "alice", "--format", "json")
    repaired = _invoke("repair-strategies", "--format", "json")
    repaired_table = _invoke("repair-strategies", "--user", "alice")

    strategies = json.loads(listed.output)["strategies"]
    assert len(strategies) == 1
    assert strategies[0]["strategy_type"] == "vertical_spread"
    assert strategies[0]["max_risk"] == "300"
    assert strategies[0]["breakeven_points"] == ["103"]
    assert len(strategies[0]["legs"]) == 2
    assert json.loads(repaired.output)["strategies"] == strategies
    assert "Recomputed 1 strategies." in repaired_table.output


def test_snapshot_with_quote_file(ingested, tmp_path):
    quotes = _write_json(
        tmp_path,
        "quotes.json",
        {"AAPL240216C00100000": "6", "AAPL240216C00105000": {"bid": "2.4", "ask": "2.6"}},
    )

    result = _invoke(
        "snapshot",
        "--user",
        "alice",
        "--date",
        "2024-01-10",
        "--quotes",
        quotes,
        "--format",
        "json",
    )
    listed = _invoke("snapshots", "--user", "alice", "--start", "2024-01-01", "--format", "json")

    assert result.exit_code == 0, result.output
    snapshot = json.loads(result.output)["snapshot"]
    assert snapshot["portfolio_value"] == "1350"
    assert snapshot["currency"] == "USD"
    assert snapshot["total_market_value"] == "350"
    assert snapshot["total_unrealized_pl"] == "50"
    assert snapshot["positions_breakdown"]["options"] == {"count": 2, "value": "350"}
    assert snapshot["stale_symbols"] == []
    assert [row["snapshot_date"] for row in json.loads(listed.output)["snapshots"]] == [
        "2024-01-10"
    ]


def test_snapshot_table_reports_stale_symbols(ingested, tmp_path):
    quotes = _write_json(tmp_path, "quotes.json", {})

    result = _invoke("snapshot", "--user", "alice", "--date", "2024-01-10", "--quotes", quotes)

    assert result.exit_code == 0, result.output
    assert "Portfolio Snapshots" in result.output
    assert "no quote" in result.output


def test_snapshot_requires_a_quote_source(db_path, monkeypatch):
    monkeypatch.delenv(QUOTE_URL_ENV_VAR, raising=False)

    result = _invoke("snapshot", "--user", "alice")

    assert result.exit_code == 1
    assert "--quotes FILE" in result.output


def test_snapshots_empty_range(db_path):
    result = _invoke("snapshots", "--user", "alice")

    assert result.exit_code == 0
    assert "No snapshots found" in result.output


def test_faults_queue(db_path, tmp_path):
    path = _write_json(tmp_path, "over.json", OVER_CLOSE_PAYLOAD)

    ingest = _invoke("--log-level", "error", "ingest", path, "--format", "json")
    listed = _invoke("faults", "--user", "bob", "--format", "json")
    table = _invoke("faults", "--user", "alice")

    assert ingest.exit_code == 0, ingest.output
    assert len(json.loads(ingest.output)["faults"]) == 1
    faults = json.loads(listed.output)["faults"]
    assert len(faults) == 1
    assert faults[0]["kind"] == "over_close"
    assert faults[0]["shortfall"] == "2"
    assert "No reconciliation faults." in table.output


def test_match_replays_stored_ledger(ingested):
    result = _invoke("match", "--user", "alice", "--format", "json")
    everyone = _invoke("match", "--format", "json")

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["transactions"] == 0
    assert data["positions"] == 2
    assert data["strategies"] == 1
    assert json.loads(everyone.output)["instruments"] == 2
