"""Formatting helpers shared by the CLI tables."""

from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from ..core.instruments import InstrumentKey
from ..core.models import Position, Strategy, StrategyLeg


def format_currency(value: Decimal | None) -> str:
    """Format a decimal value as currency."""
    if value is None:
        return "--"
    quantized = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if quantized < 0 else ""
    quantized = abs(quantized)
    return f"{sign}${quantized:,.2f}"


def format_percent(value: Decimal | None) -> str:
    """Format a value that is already expressed in percent."""
    if value is None:
        return "--"
    percent = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{percent:,.2f}%"


def format_quantity(value: Decimal) -> str:
    """Render quantities without trailing zeros (``10``, ``0.5``)."""
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return f"{int(normalized):,}"
    return format(normalized, "f")


def format_instrument(position: Position) -> str:
    """Human-readable instrument label for a position."""
    if position.asset_type == "option" and position.strike_price is not None:
        expiration = position.expiration_date.isoformat() if position.expiration_date else "?"
        kind = (position.option_type or "").upper()
        return f"{position.symbol} {expiration} {format_quantity(position.strike_price)} {kind}"
    if position.asset_type == "futures" and position.contract_month:
        return f"{position.symbol} {position.contract_month}"
    return position.symbol


def format_leg(leg: StrategyLeg) -> str:
    side = "+" if leg.side == "long" else "-"
    if leg.strike is None:
        return f"{side}{format_quantity(leg.quantity)} {leg.asset_type}"
    kind = (leg.option_type or "?")[0].upper()
    return f"{side}{format_quantity(leg.quantity)} {format_quantity(leg.strike)}{kind}"


def format_legs(legs: Sequence[StrategyLeg]) -> str:
    return " / ".join(format_leg(leg) for leg in legs)


def format_breakevens(strategy: Strategy) -> str:
    if not strategy.breakeven_points:
        return "--"
    return ", ".join(format_currency(point) for point in strategy.breakeven_points)


def format_dte(position: Position, as_of: Optional[date] = None) -> str:
    """Days to expiration of an open option or futures position, ``--`` otherwise."""
    if not position.is_open:
        return "--"
    days = InstrumentKey.from_position(position).days_to_expiration(as_of=as_of)
    return "--" if days is None else str(days)
