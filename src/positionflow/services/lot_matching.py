"""FIFO lot matching service.

Replays the ledger rows of one :class:`~positionflow.core.instruments.InstrumentKey` in
chronological order and rebuilds the positions, match audit rows and reconciliation faults they
imply. Matching is a pure function of the ledger, so replaying the same rows always yields the
same result and persistence can upsert it safely.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from ..core.instruments import (
    ASSIGNMENT_CODE,
    EXERCISE_CODE,
    EXPIRATION_CODE,
    InstrumentKey,
    multiplier_for,
    terminal_status_for,
    transaction_sort_key,
)
from ..core.models import (
    ZERO,
    Position,
    PositionMatch,
    ReconciliationFault,
    Side,
    Transaction,
)
from ..errors import OverCloseError
from .pnl import average_price, quantize_money, realized_leg

logger = structlog.get_logger(__name__)

OVER_CLOSE_FAULT = "over_close"


def _signed_amount(txn: Transaction, multiplier: Decimal) -> Decimal:
    """Cash impact of ``txn``, derived from price when the broker left the amount blank."""
    if txn.amount != 0:
        return txn.amount
    gross = txn.price * txn.abs_quantity * multiplier
    return gross if not txn.is_long else -gross


@dataclass(frozen=True)
class LotSlice:
    """A quantity slice of a ledger transaction together with its share of the cash impact."""

    transaction: Transaction
    quantity: Decimal
    price: Decimal
    amount: Decimal

    @property
    def activity_date(self) -> date:
        return self.transaction.activity_date

    @property
    def transaction_id(self) -> int:
        assert self.transaction.id is not None
        return self.transaction.id

    def split(self, quantity: Decimal) -> Tuple["LotSlice", Optional["LotSlice"]]:
        """Split into the requested quantity and the remainder, sharing ``amount`` pro rata."""
        if quantity <= 0 or quantity > self.quantity:
            raise ValueError("split quantity must be positive and at most the slice quantity")

        ratio = quantity / self.quantity
        head = LotSlice(
            transaction=self.transaction,
            quantity=quantity,
            price=self.price,
            amount=quantize_money(self.amount * ratio),
        )
        remaining = self.quantity - quantity
        if remaining == 0:
            return head, None
        tail = LotSlice(
            transaction=self.transaction,
            quantity=remaining,
            price=self.price,
            amount=quantize_money(self.amount - head.amount),
        )
        return head, tail


def _slice_from_transaction(txn: Transaction, multiplier: Decimal) -> LotSlice:
    return LotSlice(
        transaction=txn,
        quantity=txn.abs_quantity,
        price=txn.price,
        amount=_signed_amount(txn, multiplier),
    )


def _cost_basis(slice_: LotSlice, side: Side) -> Decimal:
    """Long cost basis is a debit (negative), short cost basis a credit (positive)."""
    magnitude = abs(slice_.amount)
    return -magnitude if side == "long" else magnitude


class _PositionBuilder:
    """Mutable accumulator for one flat-to-flat lifecycle of an instrument side."""

    def __init__(
        self, *, key: InstrumentKey, side: Side, multiplier: Decimal, anchor: Transaction
    ) -> None:
        self.key = key
        self.side = side
        self.multiplier = multiplier
        self.position_key = f"{key.key_id}|{side}|{anchor.id}"
        self.opened_at = anchor.activity_date
        self.lots: Deque[LotSlice] = deque()
        self.opening_quantity = ZERO
        self.opening_notional = ZERO
        self.total_cost_basis = ZERO
        self.total_closing_amount = ZERO
        self.opening_ids: List[int] = []
        self.closing_ids: List[int] = []
        self.matches: List[PositionMatch] = []
        self.closed_at: Optional[date] = None
        self.last_closing_code: Optional[str] = None
        self.needs_reconciliation = False

    @property
    def open_quantity(self) -> Decimal:
        return sum((lot.quantity for lot in self.lots), ZERO)

    @property
    def is_flat(self) -> bool:
        return not self.lots

    def add_opening(self, slice_: LotSlice) -> None:
        self.lots.append(slice_)
        self.opening_quantity += slice_.quantity
        self.opening_notional += slice_.price * slice_.quantity
        self.total_cost_basis += _cost_basis(slice_, self.side)
        if slice_.transaction_id not in self.opening_ids:
            self.opening_ids.append(slice_.transaction_id)

    def close(self, closing: LotSlice) -> List[PositionMatch]:
        """Consume open lots oldest-first. Callers guarantee enough quantity is open."""
        produced: List[PositionMatch] = []
        remaining: Optional[LotSlice] = closing
        while remaining is not None:
            lot = self.lots.popleft()
            take = min(lot.quantity, remaining.quantity)
            used_open, leftover_open = lot.split(take)
            used_close, remaining = remaining.split(take)
            if leftover_open is not None:
                self.lots.appendleft(leftover_open)

            produced.append(
                PositionMatch(
                    position_key=self.position_key,
                    opening_transaction_id=used_open.transaction_id,
                    closing_transaction_id=used_close.transaction_id,
                    matched_quantity=take,
                    opening_price=used_open.price,
                    closing_price=used_close.price,
                    realized_pl=realized_leg(
                        used_open.price,
                        used_close.price,
                        take,
                        self.multiplier,
                        self.side == "long",
                    ),
                    matched_at=used_close.activity_date,
                )
            )

        self.total_closing_amount += closing.amount
        self.matches.extend(produced)
        if closing.transaction_id not in self.closing_ids:
            self.closing_ids.append(closing.transaction_id)
        self.closed_at = closing.activity_date
        self.last_closing_code = closing.transaction.transaction_code
        return produced

    def to_position(self) -> Position:
        open_cost_basis = sum((_cost_basis(lot, self.side) for lot in self.lots), ZERO)
        if self.is_flat:
            status = terminal_status_for(self.last_closing_code or "")
            closed_at = self.closed_at
        else:
            status = "open"
            closed_at = None
        return Position(
            position_key=self.position_key,
            user_id=self.key.user_id,
            symbol=self.key.symbol,
            asset_type=self.key.asset_type,
            side=self.side,
            multiplier=self.multiplier,
            opened_at=self.opened_at,
            strike_price=self.key.strike_price,
            expiration_date=self.key.expiration_date,
            option_type=self.key.option_type,
            contract_month=self.key.contract_month,
            opening_quantity=self.opening_quantity,
            current_quantity=self.open_quantity,
            average_opening_price=average_price(self.opening_notional, self.opening_quantity),
            total_cost_basis=quantize_money(self.total_cost_basis),
            open_cost_basis=quantize_money(open_cost_basis),
            total_closing_amount=quantize_money(self.total_closing_amount),
            realized_pl=quantize_money(sum((m.realized_pl for m in self.matches), ZERO)),
            status=status,
            opening_transaction_ids=list(self.opening_ids),
            closing_transaction_ids=list(self.closing_ids),
            closed_at=closed_at,
            needs_reconciliation=self.needs_reconciliation,
        )


@dataclass
class MatchResult:
    """Everything derived from replaying the ledger rows of one instrument key."""

    key: InstrumentKey
    positions: List[Position] = field(default_factory=list)
    matches: List[PositionMatch] = field(default_factory=list)
    faults: List[ReconciliationFault] = field(default_factory=list)
    transaction_positions: Dict[int, str] = field(default_factory=dict)

    @property
    def open_positions(self) -> List[Position]:
        return [position for position in self.positions if position.is_open]

    @property
    def realized_pl(self) -> Decimal:
        return quantize_money(sum((position.realized_pl for position in self.positions), ZERO))


def _closing_side(txn: Transaction, open_sides: Dict[Side, _PositionBuilder]) -> Side:
    """Pick the side a closing transaction reduces."""
    code = txn.transaction_code
    default: Side = "short" if txn.is_long else "long"
    if code == ASSIGNMENT_CODE:
        preferred: Tuple[Side, ...] = ("short", "long")
    elif code == EXERCISE_CODE:
        preferred = ("long", "short")
    elif code == EXPIRATION_CODE:
        preferred = (default, "long" if default == "short" else "short")
    else:
        return default
    for side in preferred:
        if side in open_sides:
            return side
    return preferred[0]


def match_instrument(key: InstrumentKey, transactions: Sequence[Transaction]) -> MatchResult:
    """Replay ``transactions`` of a single instrument key through FIFO matching."""
    result = MatchResult(key=key)
    if not transactions:
        return result

    open_sides: Dict[Side, _PositionBuilder] = {}
    finished: List[_PositionBuilder] = []
    last_touched: Dict[Side, _PositionBuilder] = {}

    ordered = sorted(
        enumerate(transactions), key=lambda item: transaction_sort_key(item[1], item[0])
    )
    for _, txn in ordered:
        if txn.id is None:
            raise ValueError("lot matching requires persisted transactions with ids")
        if txn.abs_quantity == 0:
            logger.info("lot_matching.zero_quantity_skipped", transaction_id=txn.id)
            continue

        multiplier = multiplier_for(txn)
        slice_ = _slice_from_transaction(txn, multiplier)

        if txn.is_opening:
            side = txn.side
            builder = open_sides.get(side)
            if builder is None:
                builder = _PositionBuilder(key=key, side=side, multiplier=multiplier, anchor=txn)
                open_sides[side] = builder
            builder.add_opening(slice_)
            last_touched[side] = builder
            result.transaction_positions[txn.id] = builder.position_key
            continue

        side = _closing_side(txn, open_sides)
        builder = open_sides.get(side)
        available = builder.open_quantity if builder is not None else ZERO
        if slice_.quantity > available:
            error = OverCloseError(
                transaction_id=txn.id,
                user_id=key.user_id,
                instrument=key.display_name,
                requested=slice_.quantity,
                available=available,
            )
            flagged = builder or last_touched.get(side)
            if flagged is not None:
                flagged.needs_reconciliation = True
            result.faults.append(
                ReconciliationFault(
                    user_id=key.user_id,
                    transaction_id=txn.id,
                    instrument_key=key.key_id,
                    kind=OVER_CLOSE_FAULT,
                    shortfall=error.shortfall,
                    detail=str(error),
                )
            )
            logger.warning(
                "lot_matching.fault_recorded",
                transaction_id=txn.id,
                user_id=key.user_id,
                instrument=key.key_id,
                shortfall=str(error.shortfall),
            )
            continue

        assert builder is not None
        result.matches.extend(builder.close(slice_))
        result.transaction_positions[txn.id] = builder.position_key
        if builder.is_flat:
            finished.append(builder)
            del open_sides[side]

    builders = finished + list(open_sides.values())
    builders.sort(key=lambda item: (item.opened_at, item.opening_ids[0]))
    result.positions = [builder.to_position() for builder in builders]
    return result


def group_by_instrument(
    transactions: Iterable[Transaction],
) -> Dict[InstrumentKey, List[Transaction]]:
    """Bucket ledger rows by instrument key, each bucket in chronological order."""
    grouped: Dict[InstrumentKey, List[Transaction]] = defaultdict(list)
    for txn in transactions:
        grouped[InstrumentKey.from_transaction(txn)].append(txn)
    for bucket in grouped.values():
        bucket.sort(key=lambda txn: transaction_sort_key(txn))
    return dict(grouped)


def match_transactions_with_errors(
    transactions: Iterable[Transaction],
) -> Tuple[
    Dict[InstrumentKey, MatchResult],
    List[Tuple[InstrumentKey, Exception, List[Transaction]]],
]:
    """Run FIFO matching per instrument key while capturing keys that fail to reconcile."""
    results: Dict[InstrumentKey, MatchResult] = {}
    errors: List[Tuple[InstrumentKey, Exception, List[Transaction]]] = []

    for key, bucket in group_by_instrument(transactions).items():
        try:
            results[key] = match_instrument(key, bucket)
        except Exception as exc:  # noqa: BLE001 - isolate failures per instrument key
            logger.error("lot_matching.key_failed", instrument=key.key_id, error=str(exc))
            errors.append((key, exc, bucket))

    return results, errors


def match_transactions(transactions: Iterable[Transaction]) -> Dict[InstrumentKey, MatchResult]:
    """Group ledger rows by instrument key and return FIFO results for each key."""
    return {
        key: match_instrument(key, bucket)
        for key, bucket in group_by_instrument(transactions).items()
    }
