"""Pytest configuration and fixtures."""

from datetime import date
from decimal import Decimal

import pytest

from positionflow.core.models import Transaction
from positionflow.persistence import SQLiteRepository, SQLiteStorage
from positionflow.persistence import storage as storage_module


@pytest.fixture(scope="session", autouse=True)
def isolated_persistence(tmp_path_factory):
    """Ensure tests use an isolated SQLite database and reset caches between runs."""

    db_dir = tmp_path_factory.mktemp("persistence-db")
    db_path = db_dir / "positionflow.db"
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv(storage_module.DB_ENV_VAR, str(db_path))
    storage_module.get_storage.cache_clear()
    try:
        yield
    finally:
        storage_module.get_storage.cache_clear()
        monkeypatch.undo()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the default storage at a fresh per-test database."""

    path = tmp_path / "positionflow.db"
    monkeypatch.setenv(storage_module.DB_ENV_VAR, str(path))
    storage_module.get_storage.cache_clear()
    yield path
    storage_module.get_storage.cache_clear()


@pytest.fixture
def repository(tmp_path) -> SQLiteRepository:
    """Repository over an empty database private to the test."""

    return SQLiteRepository(SQLiteStorage(tmp_path / "ledger.db"))


def make_transaction(**overrides) -> Transaction:
    """Convenience factory for ledger transactions; defaults to a long stock buy."""

    return Transaction(
        id=overrides.get("id"),
        user_id=overrides.get("user_id", "alice"),
        activity_date=overrides.get("activity_date", date(2024, 1, 2)),
        symbol=overrides.get("symbol", "AAPL"),
        description=overrides.get("description", ""),
        transaction_code=overrides.get("transaction_code", "BTO"),
        asset_type=overrides.get("asset_type", "stock"),
        quantity=Decimal(str(overrides.get("quantity", "10"))),
        price=Decimal(str(overrides.get("price", "150"))),
        amount=Decimal(str(overrides.get("amount", "-1500"))),
        fees=Decimal(str(overrides.get("fees", "0"))),
        strike_price=overrides.get("strike_price"),
        expiration_date=overrides.get("expiration_date"),
        option_type=overrides.get("option_type"),
        contract_month=overrides.get("contract_month"),
        multiplier=overrides.get("multiplier"),
        is_opening=overrides.get("is_opening", True),
        is_long=overrides.get("is_long", True),
    )


def make_option(**overrides) -> Transaction:
    """Option flavour of :func:`make_transaction` (AAPL 100 call expiring 2024-02-16)."""

    defaults = {
        "asset_type": "option",
        "strike_price": Decimal("100"),
        "expiration_date": date(2024, 2, 16),
        "option_type": "call",
        "quantity": "1",
        "price": "5",
        "amount": "-500",
    }
    defaults.update(overrides)
    return make_transaction(**defaults)


@pytest.fixture
def make_txn():
    return make_transaction


@pytest.fixture
def make_option_txn():
    return make_option
