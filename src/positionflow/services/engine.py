"""Reconciliation engine.

Coordinates lot matching and strategy detection for batches of ledger rows. Matching for one
instrument key is serialized behind an :class:`asyncio.Lock`; different keys (and users) are
matched in parallel, with the blocking SQLite work pushed to worker threads. Strategy detection
runs once every key of a batch has settled.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from ..core.instruments import InstrumentKey
from ..core.models import ReconciliationFault, Strategy, Transaction
from ..persistence import SQLiteRepository
from .lot_matching import MatchResult, match_instrument
from .strategy_detection import detect_strategies, recompute_strategies

logger = structlog.get_logger(__name__)


class InstrumentLocks:
    """
    Registry handing out one :class:`asyncio.Lock` per instrument key.

    Serialization holds only among engines sharing this registry inside one process and event
    loop. Separate CLI invocations and API workers each build their own registry, so concurrent
    writers across processes rely on the deterministic replay being idempotent instead.
    A key's lock is dropped once no coroutine holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def for_key(self, key: InstrumentKey) -> asyncio.Lock:
        lock = self._locks.get(key.key_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key.key_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: InstrumentKey) -> AsyncIterator[None]:
        """Acquire the key's lock, evicting it after the last holder leaves."""
        key_id = key.key_id
        lock = self.for_key(key)
        self._holders[key_id] = self._holders.get(key_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key_id] -= 1
            if self._holders[key_id] == 0:
                del self._holders[key_id]
                self._locks.pop(key_id, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class ReconciliationReport:
    """Outcome of reconciling a batch of instrument keys."""

    results: Dict[InstrumentKey, MatchResult] = field(default_factory=dict)
    errors: List[Tuple[InstrumentKey, Exception]] = field(default_factory=list)
    strategies: List[Strategy] = field(default_factory=list)

    @property
    def faults(self) -> List[ReconciliationFault]:
        return [fault for result in self.results.values() for fault in result.faults]

    @property
    def position_count(self) -> int:
        return sum(len(result.positions) for result in self.results.values())

    @property
    def match_count(self) -> int:
        return sum(len(result.matches) for result in self.results.values())


class ReconciliationEngine:
    """Replays ledger rows per instrument key and keeps derived state current."""

    def __init__(
        self,
        repository: SQLiteRepository,
        *,
        locks: Optional[InstrumentLocks] = None,
    ) -> None:
        self._repository = repository
        self._locks = locks or InstrumentLocks()

    @property
    def repository(self) -> SQLiteRepository:
        return self._repository

    def _replay(self, key: InstrumentKey) -> MatchResult:
        transactions = self._repository.fetch_transactions(key=key)
        result = match_instrument(key, transactions)
        self._repository.save_match_result(result)
        return result

    async def reconcile_key(self, key: InstrumentKey) -> MatchResult:
        """Re-run FIFO matching for one key. Calls for the same key never overlap."""
        async with self._locks.hold(key):
            result = await asyncio.to_thread(self._replay, key)
        logger.debug(
            "engine.key_reconciled",
            instrument=key.key_id,
            positions=len(result.positions),
            matches=len(result.matches),
            faults=len(result.faults),
        )
        return result

    async def reconcile_keys(self, keys: Iterable[InstrumentKey]) -> ReconciliationReport:
        """Match ``keys`` concurrently, then detect strategies for the users they touch."""
        unique_keys = list(dict.fromkeys(keys))
        outcomes = await asyncio.gather(
            *(self.reconcile_key(key) for key in unique_keys), return_exceptions=True
        )

        report = ReconciliationReport()
        for key, outcome in zip(unique_keys, outcomes):
            if isinstance(outcome, Exception):
                logger.error("engine.key_failed", instrument=key.key_id, error=str(outcome))
                report.errors.append((key, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report.results[key] = outcome

        for user_id in sorted({key.user_id for key in unique_keys}):
            refreshed = await asyncio.to_thread(recompute_strategies, self._repository, user_id)
            detected = await asyncio.to_thread(detect_strategies, self._repository, user_id)
            report.strategies.extend(refreshed)
            report.strategies.extend(detected)
        return report

    async def process_transactions(
        self, transactions: Sequence[Transaction]
    ) -> ReconciliationReport:
        """Append new ledger rows and reconcile every instrument key they touch."""
        stored = await asyncio.to_thread(
            self._repository.storage.append_transactions, transactions
        )
        keys = [InstrumentKey.from_transaction(txn) for txn in stored]
        logger.info("engine.transactions_appended", count=len(stored), keys=len(set(keys)))
        return await self.reconcile_keys(keys)

    async def reconcile_user(self, user_id: str) -> ReconciliationReport:
        """Replay the whole ledger of ``user_id``."""
        transactions = await asyncio.to_thread(
            self._repository.fetch_transactions, user_id=user_id
        )
        return await self.reconcile_keys(
            InstrumentKey.from_transaction(txn) for txn in transactions
        )

    async def reconcile_all(self) -> ReconciliationReport:
        """Replay the ledgers of every user concurrently."""
        users = await asyncio.to_thread(self._repository.list_users)
        reports = await asyncio.gather(*(self.reconcile_user(user_id) for user_id in users))
        merged = ReconciliationReport()
        for report in reports:
            merged.results.update(report.results)
            merged.errors.extend(report.errors)
            merged.strategies.extend(report.strategies)
        return merged
