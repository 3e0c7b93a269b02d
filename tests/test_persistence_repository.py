"""Tests for the read/query helpers over the persistence layer."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal

from positionflow.core.instruments import InstrumentKey
from positionflow.core.models import AssetBreakdown, CashTransaction, PortfolioSnapshot
from positionflow.services.lot_matching import match_instrument
from positionflow.services.strategy_detection import build_strategy


def _replay(repository, txn):
    key = InstrumentKey.from_transaction(txn)
    result = match_instrument(key, repository.fetch_transactions(key=key))
    repository.save_match_result(result)
    return result


def _snapshot(snapshot_date, value="1000", user_id="alice") -> PortfolioSnapshot:
    return PortfolioSnapshot(
        user_id=user_id,
        snapshot_date=snapshot_date,
        portfolio_value=Decimal(value),
        net_cash_flow=Decimal(value),
        total_market_value=Decimal("0"),
        total_realized_pl=Decimal("0"),
        total_unrealized_pl=Decimal("0"),
        open_positions_count=0,
        total_positions_count=0,
        positions_breakdown={"stocks": AssetBreakdown(count=0, value=Decimal("0"))},
        stale_symbols=("AAPL",),
    )


def test_fetch_transactions_by_instrument_key(repository, make_option_txn, make_txn):
    stored = repository.storage.append_transactions(
        [
            make_option_txn(),
            make_option_txn(strike_price=Decimal("105")),
            make_option_txn(transaction_code="STC", is_opening=False, is_long=False),
            make_txn(),
        ]
    )

    key = InstrumentKey.from_transaction(stored[0])
    rows = repository.fetch_transactions(key=key)

    assert [txn.id for txn in rows] == [1, 3]
    assert rows[0].amount == stored[0].amount
    assert rows[1].is_opening is False
    assert [txn.id for txn in repository.fetch_transactions(transaction_ids=[4, 2])] == [2, 4]
    assert repository.fetch_transactions(transaction_ids=[]) == []
    assert len(repository.fetch_transactions(user_id="alice")) == 4


def test_list_users_spans_both_ledgers(repository, make_txn):
    repository.storage.append_transactions([make_txn(user_id="bob")])
    repository.storage.append_cash_transactions(
        [
            CashTransaction(
                user_id="alice",
                transaction_code="DEP",
                amount=Decimal("10"),
                activity_date=date(2024, 1, 1),
            )
        ]
    )

    assert repository.list_users() == ["alice", "bob"]


def test_save_match_result_persists_positions_and_matches(repository, make_txn):
    stored = repository.storage.append_transactions(
        [
            make_txn(),
            make_txn(
                transaction_code="STC",
                quantity="-4",
                price="160",
                amount="640",
                is_opening=False,
                is_long=False,
            ),
        ]
    )

    position_ids = repository.save_match_result(
        match_instrument(InstrumentKey.from_transaction(stored[0]), stored)
    )

    (position_id,) = position_ids.values()
    position = repository.get_position(position_id)
    assert position is not None
    assert position.status == "open"
    assert position.current_quantity == Decimal("6")
    assert position.opening_transaction_ids == [1]
    assert position.closing_transaction_ids == [2]
    matches = repository.fetch_matches(position_id)
    assert len(matches) == 1
    assert matches[0].position_id == position_id
    assert matches[0].realized_pl == Decimal("40.00")
    assert repository.get_position(999) is None


def test_replay_with_earlier_row_replaces_stale_position(repository, make_txn):
    first = repository.storage.append_transactions([make_txn(activity_date=date(2024, 1, 5))])[0]
    _replay(repository, first)
    original = repository.fetch_positions(user_id="alice")[0]

    earlier = repository.storage.append_transactions([make_txn(activity_date=date(2024, 1, 1))])[0]
    _replay(repository, earlier)

    positions = repository.fetch_positions(user_id="alice")
    assert len(positions) == 1
    assert positions[0].position_key != original.position_key
    assert positions[0].opened_at == date(2024, 1, 1)
    assert positions[0].opening_transaction_ids == [earlier.id, first.id]
    assert repository.get_position(original.id) is None


def test_replay_keeps_unrealized_pl_of_open_positions(repository, make_txn):
    txn = repository.storage.append_transactions([make_txn()])[0]
    _replay(repository, txn)
    position = repository.fetch_positions()[0]

    repository.update_unrealized_pl({position.id: Decimal("42.50")})
    _replay(repository, txn)

    assert repository.get_position(position.id).unrealized_pl == Decimal("42.50")


def test_faults_resolve_when_the_ledger_is_fixed(repository, make_txn):
    closing = repository.storage.append_transactions(
        [
            make_txn(
                activity_date=date(2024, 1, 5),
                transaction_code="STC",
                quantity="-10",
                price="160",
                amount="1600",
                is_opening=False,
                is_long=False,
            )
        ]
    )[0]
    _replay(repository, closing)
    assert len(repository.fetch_faults(user_id="alice")) == 1

    _replay(repository, closing)
    assert len(repository.fetch_faults(include_resolved=True)) == 1

    opening = repository.storage.append_transactions([make_txn()])[0]
    _replay(repository, opening)

    assert repository.fetch_faults(user_id="alice") == []
    resolved = repository.fetch_faults(user_id="alice", include_resolved=True)
    assert len(resolved) == 1
    assert resolved[0].is_resolved
    assert resolved[0].transaction_id == closing.id
    assert repository.fetch_positions()[0].status == "closed"


def test_fetch_positions_filters(repository, make_txn, make_option_txn):
    stored = repository.storage.append_transactions(
        [
            make_txn(),
            make_txn(symbol="MSFT", user_id="bob"),
            make_option_txn(),
            make_option_txn(
                activity_date=date(2024, 2, 16),
                transaction_code="OEXP",
                price="0",
                amount="0",
                is_opening=False,
                is_long=False,
            ),
        ]
    )
    for txn in stored[:3]:
        _replay(repository, txn)

    assert len(repository.fetch_positions()) == 3
    assert [p.symbol for p in repository.fetch_positions(user_id="bob")] == ["MSFT"]
    assert [p.asset_type for p in repository.fetch_positions(status="open")] == [
        "stock",
        "stock",
    ]
    assert [p.status for p in repository.fetch_positions(status="terminal")] == ["expired"]
    assert [p.status for p in repository.fetch_positions(status="expired")] == ["expired"]
    assert repository.fetch_positions(status="closed") == []
    assert len(repository.fetch_positions(asset_type="option")) == 1
    assert len(repository.fetch_positions(symbol=" aapl ")) == 2
    assert len(repository.fetch_positions(opened_at=date(2024, 1, 2))) == 3
    assert len(repository.fetch_positions(unattached=True)) == 3


def test_strategies_round_trip_and_orphans(repository, make_option_txn):
    stored = repository.storage.append_transactions(
        [
            make_option_txn(),
            make_option_txn(
                strike_price=Decimal("105"),
                transaction_code="STO",
                quantity="-1",
                price="2",
                amount="200",
                is_long=False,
            ),
        ]
    )
    for txn in stored:
        _replay(repository, txn)
    legs = repository.fetch_positions(user_id="alice")
    strategy = build_strategy(legs)

    strategy_id = repository.save_strategy(strategy, legs)
    again = repository.save_strategy(replace(strategy, realized_pl=Decimal("1.00")), legs)

    assert again == strategy_id
    loaded = repository.get_strategy(strategy_id)
    assert loaded == replace(strategy, id=strategy_id, realized_pl=Decimal("1.00"))
    assert repository.fetch_strategies(strategy_type="vertical_spread")[0].id == strategy_id
    assert repository.fetch_strategies(symbol="msft") == []
    assert repository.fetch_strategies(status="closed") == []
    assert len(repository.fetch_positions(strategy_id=strategy_id)) == 2
    assert repository.delete_orphan_strategies("alice") == 0

    with repository.storage._connect() as conn:
        conn.execute("DELETE FROM positions")
    assert repository.delete_orphan_strategies() == 1
    assert repository.get_strategy(strategy_id) is None


def test_snapshots_upsert_and_range(repository):
    for day in (1, 2, 3):
        repository.upsert_snapshot(_snapshot(date(2024, 3, day), value=str(day * 100)))
    repository.upsert_snapshot(_snapshot(date(2024, 3, 2), value="250"))
    repository.upsert_snapshot(_snapshot(date(2024, 3, 2), user_id="bob"))

    rows = repository.fetch_snapshots("alice", start=date(2024, 3, 2), end=date(2024, 3, 3))

    assert [row.snapshot_date for row in rows] == [date(2024, 3, 2), date(2024, 3, 3)]
    assert rows[0].portfolio_value == Decimal("250")
    assert rows[0].stale_symbols == ("AAPL",)
    assert rows[0].positions_breakdown == {"stocks": AssetBreakdown(0, Decimal("0"))}
    assert len(repository.fetch_snapshots("alice")) == 3
    previous = repository.get_previous_day_snapshot("alice", date(2024, 3, 3))
    assert previous is not None
    assert previous.portfolio_value == Decimal("250")
    assert repository.get_previous_day_snapshot("alice", date(2024, 3, 1)) is None
