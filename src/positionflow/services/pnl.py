"""
Profit/loss arithmetic shared by lot matching, strategy detection and snapshots.

All functions are pure and operate on :class:`~decimal.Decimal` values. Monetary results are
quantized to cents; sign conventions follow the ledger (credit positive, debit negative).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..core.models import Position

MoneyAmount = Decimal
CENTS = Decimal("0.01")
PRICE_QUANTIZER = Decimal("0.0001")


def quantize_money(value: Decimal | int | float) -> MoneyAmount:
    """Normalise monetary values to cents while preserving sign."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS)


def realized_leg(
    open_price: Decimal,
    close_price: Decimal,
    quantity: Decimal,
    multiplier: Decimal,
    is_long: bool,
) -> MoneyAmount:
    """Realized P&L of closing ``quantity`` units opened at ``open_price``."""
    direction = Decimal("1") if is_long else Decimal("-1")
    return quantize_money((close_price - open_price) * abs(quantity) * multiplier * direction)


def market_value(
    asset_type: str,
    quantity: Decimal,
    current_price: Decimal,
    multiplier: Decimal,
    is_long: bool,
    *,
    unrealized_pl: Optional[Decimal] = None,
) -> MoneyAmount:
    """
    Contribution of a holding to portfolio market value.

    Long holdings are assets and short holdings liabilities. Futures are margin instruments:
    only their unrealized P&L counts, so callers must pass ``unrealized_pl`` for them.
    """
    if asset_type == "futures":
        if unrealized_pl is None:
            raise ValueError("futures market value requires unrealized_pl")
        return quantize_money(unrealized_pl)

    scale = multiplier if asset_type == "option" else Decimal("1")
    gross = abs(quantity) * scale * current_price
    return quantize_money(gross if is_long else -gross)


def unrealized_leg(
    current_price: Decimal,
    avg_open_price: Decimal,
    quantity: Decimal,
    multiplier: Decimal,
    is_long: bool,
    cost_basis: Optional[Decimal] = None,
    *,
    asset_type: str = "option",
) -> MoneyAmount:
    """
    Mark-to-market P&L of an open holding.

    Uses ``market value − |cost basis|`` for longs and ``|cost basis| − |market value|`` for
    shorts. When ``cost_basis`` is omitted it is derived from the average opening price.
    """
    if asset_type == "futures":
        return realized_leg(avg_open_price, current_price, quantity, multiplier, is_long)

    scale = multiplier if asset_type == "option" else Decimal("1")
    if cost_basis is None:
        cost_basis = avg_open_price * abs(quantity) * scale
    gross = abs(quantity) * scale * current_price
    basis = abs(cost_basis)
    return quantize_money(gross - basis if is_long else basis - gross)


@dataclass(frozen=True)
class Valuation:
    """Market value and unrealized P&L of one position."""

    market_value: MoneyAmount
    unrealized_pl: MoneyAmount
    stale: bool


def value_position(position: Position, current_price: Optional[Decimal]) -> Valuation:
    """
    Value an open position at ``current_price``.

    Without a usable price the position's last stored ``unrealized_pl`` is carried forward and
    the valuation is marked stale.
    """
    price_usable = current_price is not None and (
        current_price > 0 or (position.asset_type == "option" and current_price == 0)
    )
    if not price_usable:
        return _stale_valuation(position)

    assert current_price is not None
    unrealized = unrealized_leg(
        current_price,
        position.average_opening_price,
        position.current_quantity,
        position.multiplier,
        position.is_long,
        position.open_cost_basis,
        asset_type=position.asset_type,
    )
    value = market_value(
        position.asset_type,
        position.current_quantity,
        current_price,
        position.multiplier,
        position.is_long,
        unrealized_pl=unrealized,
    )
    return Valuation(market_value=value, unrealized_pl=unrealized, stale=False)


def _stale_valuation(position: Position) -> Valuation:
    stored = quantize_money(position.unrealized_pl)
    if position.asset_type == "futures":
        return Valuation(market_value=stored, unrealized_pl=stored, stale=True)
    basis = abs(position.open_cost_basis)
    value = basis + stored if position.is_long else -(basis - stored)
    return Valuation(market_value=quantize_money(value), unrealized_pl=stored, stale=True)


def average_price(total: Decimal, quantity: Decimal) -> Decimal:
    """Weighted average price, zero when nothing is held."""
    if quantity == 0:
        return Decimal("0")
    return (total / quantity).quantize(PRICE_QUANTIZER)
