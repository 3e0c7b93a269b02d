import asyncio
import sqlite3
from datetime import date
from decimal import Decimal

import pytest

from positionflow.core.instruments import InstrumentKey
from positionflow.core.models import CashTransaction, Position
from positionflow.errors import SnapshotWriteError
from positionflow.persistence import SQLiteRepository
from positionflow.services.engine import ReconciliationEngine
from positionflow.services.lot_matching import match_instrument
from positionflow.services.quotes import StaticQuoteProvider
from positionflow.services.snapshots import (
    effective_realized_pl,
    generate_snapshot,
    generate_snapshots,
    net_cash_flow,
)

SNAPSHOT_DATE = date(2024, 3, 1)


def _cash(amount, code="DEP", user_id="alice") -> CashTransaction:
    return CashTransaction(
        user_id=user_id,
        transaction_code=code,
        amount=Decimal(amount),
        activity_date=date(2024, 1, 1),
    )


def _seed(repository, make_txn, user_id="alice"):
    stored = repository.storage.append_transactions([make_txn(user_id=user_id)])
    repository.save_match_result(
        match_instrument(InstrumentKey.from_transaction(stored[0]), stored)
    )
    repository.storage.append_cash_transactions([_cash("5000", user_id=user_id)])


def _snapshot(repository, prices, snapshot_date=SNAPSHOT_DATE, **kwargs):
    provider = StaticQuoteProvider.from_prices(prices)
    return asyncio.run(
        generate_snapshot(repository, provider, "alice", snapshot_date, backoff_seconds=0, **kwargs)
    )


def test_snapshot_values_open_positions_at_quotes(repository, make_txn):
    _seed(repository, make_txn)

    snapshot = _snapshot(repository, {"AAPL": "160"})

    assert snapshot.id is not None
    assert snapshot.net_cash_flow == Decimal("5000.00")
    assert snapshot.total_market_value == Decimal("1600.00")
    assert snapshot.total_unrealized_pl == Decimal("100.00")
    assert snapshot.portfolio_value == Decimal("6600.00")
    assert snapshot.open_positions_count == 1
    assert snapshot.total_positions_count == 1
    assert snapshot.positions_breakdown["stocks"].count == 1
    assert snapshot.positions_breakdown["stocks"].value == Decimal("1600.00")
    assert snapshot.positions_breakdown["options"].count == 0
    assert snapshot.stale_symbols == ()
    assert snapshot.daily_pl_change is None
    assert repository.fetch_positions(user_id="alice")[0].unrealized_pl == Decimal("100.00")


def test_missing_quote_carries_last_known_pl(repository, make_txn):
    _seed(repository, make_txn)
    _snapshot(repository, {"AAPL": "160"}, snapshot_date=date(2024, 2, 29))

    snapshot = _snapshot(repository, {})

    assert snapshot.is_stale is True
    assert snapshot.stale_symbols == ("AAPL",)
    assert snapshot.total_unrealized_pl == Decimal("100.00")
    assert snapshot.total_market_value == Decimal("1600.00")
    assert snapshot.portfolio_value == Decimal("6600.00")


def test_daily_change_against_previous_day(repository, make_txn):
    _seed(repository, make_txn)
    _snapshot(repository, {"AAPL": "150"}, snapshot_date=date(2024, 2, 29))

    snapshot = _snapshot(repository, {"AAPL": "210"})

    assert snapshot.portfolio_value == Decimal("7100.00")
    assert snapshot.daily_pl_change == Decimal("600.00")
    assert snapshot.daily_pl_percent == Decimal("9.23")


def test_regenerating_a_day_replaces_the_snapshot(repository, make_txn):
    _seed(repository, make_txn)

    first = _snapshot(repository, {"AAPL": "160"})
    second = _snapshot(repository, {"AAPL": "170"})

    stored = repository.fetch_snapshots("alice")
    assert first.id == second.id
    assert len(stored) == 1
    assert stored[0].portfolio_value == Decimal("6700.00")
    assert repository.get_snapshot("alice", SNAPSHOT_DATE) == stored[0]


def test_terminal_positions_feed_realized_pl(repository, make_txn):
    stored = repository.storage.append_transactions(
        [
            make_txn(),
            make_txn(
                activity_date=date(2024, 1, 5),
                transaction_code="STC",
                quantity="-10",
                price="155",
                amount="1550",
                is_opening=False,
                is_long=False,
            ),
        ]
    )
    repository.save_match_result(
        match_instrument(InstrumentKey.from_transaction(stored[0]), stored)
    )

    snapshot = _snapshot(repository, {})

    assert snapshot.total_realized_pl == Decimal("50.00")
    assert snapshot.open_positions_count == 0
    assert snapshot.total_positions_count == 1
    assert snapshot.total_market_value == Decimal("0.00")
    assert snapshot.stale_symbols == ()


def _expired_short(**overrides) -> Position:
    return Position(
        position_key="short-put",
        user_id="alice",
        symbol="AAPL",
        asset_type="option",
        side=overrides.get("side", "short"),
        multiplier=Decimal("100"),
        opened_at=date(2024, 1, 2),
        total_cost_basis=Decimal("200"),
        realized_pl=overrides.get("realized_pl", Decimal("0")),
        status=overrides.get("status", "expired"),
    )


def test_expired_short_with_zero_realized_counts_the_credit():
    assert effective_realized_pl(_expired_short()) == Decimal("200")
    assert effective_realized_pl(_expired_short(realized_pl=Decimal("150"))) == Decimal("150")
    assert effective_realized_pl(_expired_short(status="closed")) == Decimal("0")
    assert effective_realized_pl(_expired_short(side="long")) == Decimal("0")


def test_net_cash_flow_excludes_futures_margin():
    rows = [
        _cash("1000"),
        _cash("-250.50", code="ACH"),
        _cash("-3000", code="FUTURES_MARGIN"),
        _cash("3000", code="FUTURES_MARGIN_RELEASE"),
    ]

    assert net_cash_flow(rows) == Decimal("749.50")


class _LockedRepository(SQLiteRepository):
    def __init__(self, storage, failures, message="database is locked"):
        super().__init__(storage)
        self.failures = failures
        self.message = message
        self.attempts = 0

    def upsert_snapshot(self, snapshot):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise sqlite3.OperationalError(self.message)
        return super().upsert_snapshot(snapshot)


def test_snapshot_write_retries_transient_lock(repository, make_txn):
    _seed(repository, make_txn)
    flaky = _LockedRepository(repository.storage, failures=2)

    snapshot = _snapshot(flaky, {"AAPL": "160"}, write_attempts=3)

    assert flaky.attempts == 3
    assert snapshot.id is not None


def test_failed_snapshot_write_leaves_positions_untouched(repository, make_txn):
    _seed(repository, make_txn)
    flaky = _LockedRepository(repository.storage, failures=10)

    with pytest.raises(SnapshotWriteError) as excinfo:
        _snapshot(flaky, {"AAPL": "160"}, write_attempts=2)

    assert flaky.attempts == 2
    assert excinfo.value.attempts == 2
    assert repository.fetch_snapshots("alice") == []
    assert repository.fetch_positions(user_id="alice")[0].unrealized_pl == Decimal("0")


def test_non_transient_write_errors_propagate(repository, make_txn):
    _seed(repository, make_txn)
    broken = _LockedRepository(repository.storage, failures=1, message="no such table")

    with pytest.raises(sqlite3.OperationalError):
        _snapshot(broken, {"AAPL": "160"})

    assert broken.attempts == 1


class _FailingUserRepository(SQLiteRepository):
    def fetch_positions(self, **kwargs):
        if kwargs.get("user_id") == "bob":
            raise RuntimeError("bob is broken")
        return super().fetch_positions(**kwargs)


def test_generate_snapshots_isolates_users(repository, make_txn):
    _seed(repository, make_txn)
    _seed(repository, make_txn, user_id="bob")
    _seed(repository, make_txn, user_id="carol")
    failing = _FailingUserRepository(repository.storage)
    provider = StaticQuoteProvider.from_prices({"AAPL": "160"})

    results = asyncio.run(generate_snapshots(failing, provider, SNAPSHOT_DATE))

    assert [snapshot.user_id for snapshot in results] == ["alice", "carol"]
    assert repository.fetch_snapshots("bob") == []


def test_regenerating_a_mixed_portfolio_is_field_for_field_equal(
    repository, make_txn, make_option_txn
):
    rows = [
        make_txn(),
        make_txn(symbol="BTC", asset_type="crypto", quantity="0.5", price="60000", amount="-30000"),
        make_option_txn(),
        make_txn(
            symbol="ES",
            asset_type="futures",
            contract_month="DEC24",
            quantity="1",
            price="5000",
            amount="-250000",
        ),
        make_txn(symbol="MSFT", quantity="2", price="400", amount="-800"),
        make_txn(
            symbol="MSFT",
            activity_date=date(2024, 1, 9),
            transaction_code="STC",
            quantity="-2",
            price="410",
            amount="820",
            is_opening=False,
            is_long=False,
        ),
    ]
    asyncio.run(ReconciliationEngine(repository).process_transactions(rows))
    repository.storage.append_cash_transactions([_cash("300000"), _cash("-25", code="FEE")])
    prices = {
        "AAPL": "160",
        "BTC": "65000",
        "AAPL240216C00100000": "6",
        "ESDEC24": "5010",
    }

    first = _snapshot(repository, prices)
    second = _snapshot(repository, prices)

    assert first.total_positions_count == 5
    assert first.open_positions_count == 4
    assert {name: entry.count for name, entry in first.positions_breakdown.items()} == {
        "stocks": 1,
        "options": 1,
        "crypto": 1,
        "futures": 1,
    }
    assert first.total_realized_pl == Decimal("20.00")
    assert first.stale_symbols == ()
    assert second == first
    assert repository.get_snapshot("alice", SNAPSHOT_DATE) == second
