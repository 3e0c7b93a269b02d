"""JSON serialization utilities for positions, strategies and snapshots."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from ..core.models import (
    PortfolioSnapshot,
    Position,
    PositionMatch,
    ReconciliationFault,
    Strategy,
    StrategyLeg,
)


def serialize_decimal(value: Any) -> Any:
    """Serialize Decimal values to JSON-compatible format."""
    if isinstance(value, Decimal):
        normalized = value.normalize()
        return format(normalized, "f")
    return value


def _serialize_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_position(position: Position) -> Dict[str, Any]:
    return {
        "id": position.id,
        "position_key": position.position_key,
        "user_id": position.user_id,
        "symbol": position.symbol,
        "asset_type": position.asset_type,
        "side": position.side,
        "multiplier": serialize_decimal(position.multiplier),
        "strike_price": serialize_decimal(position.strike_price),
        "expiration_date": _serialize_date(position.expiration_date),
        "option_type": position.option_type,
        "contract_month": position.contract_month,
        "opening_quantity": serialize_decimal(position.opening_quantity),
        "current_quantity": serialize_decimal(position.current_quantity),
        "average_opening_price": serialize_decimal(position.average_opening_price),
        "total_cost_basis": serialize_decimal(position.total_cost_basis),
        "total_closing_amount": serialize_decimal(position.total_closing_amount),
        "realized_pl": serialize_decimal(position.realized_pl),
        "unrealized_pl": serialize_decimal(position.unrealized_pl),
        "status": position.status,
        "opened_at": _serialize_date(position.opened_at),
        "closed_at": _serialize_date(position.closed_at),
        "opening_transaction_ids": list(position.opening_transaction_ids),
        "closing_transaction_ids": list(position.closing_transaction_ids),
        "needs_reconciliation": position.needs_reconciliation,
        "strategy_id": position.strategy_id,
    }


def serialize_match(match: PositionMatch) -> Dict[str, Any]:
    return {
        "id": match.id,
        "position_id": match.position_id,
        "opening_transaction_id": match.opening_transaction_id,
        "closing_transaction_id": match.closing_transaction_id,
        "matched_quantity": serialize_decimal(match.matched_quantity),
        "opening_price": serialize_decimal(match.opening_price),
        "closing_price": serialize_decimal(match.closing_price),
        "realized_pl": serialize_decimal(match.realized_pl),
        "matched_at": _serialize_date(match.matched_at),
    }


def serialize_leg(leg: StrategyLeg) -> Dict[str, Any]:
    return {
        "position_id": leg.position_id,
        "asset_type": leg.asset_type,
        "side": leg.side,
        "quantity": serialize_decimal(leg.quantity),
        "opening_price": serialize_decimal(leg.opening_price),
        "status": leg.status,
        "strike": serialize_decimal(leg.strike),
        "expiration": _serialize_date(leg.expiration),
        "option_type": leg.option_type,
    }


def serialize_strategy(strategy: Strategy) -> Dict[str, Any]:
    return {
        "id": strategy.id,
        "user_id": strategy.user_id,
        "strategy_type": strategy.strategy_type,
        "underlying_symbol": strategy.underlying_symbol,
        "direction": strategy.direction,
        "confidence": serialize_decimal(strategy.confidence),
        "status": strategy.status,
        "opened_at": _serialize_date(strategy.opened_at),
        "closed_at": _serialize_date(strategy.closed_at),
        "expiration_date": _serialize_date(strategy.expiration_date),
        "total_opening_cost": serialize_decimal(strategy.total_opening_cost),
        "total_closing_proceeds": serialize_decimal(strategy.total_closing_proceeds),
        "realized_pl": serialize_decimal(strategy.realized_pl),
        "unrealized_pl": serialize_decimal(strategy.unrealized_pl),
        "max_risk": serialize_decimal(strategy.max_risk),
        "max_profit": serialize_decimal(strategy.max_profit),
        "breakeven_points": [serialize_decimal(point) for point in strategy.breakeven_points],
        "needs_reconciliation": strategy.needs_reconciliation,
        "legs": [serialize_leg(leg) for leg in strategy.legs],
    }


def serialize_snapshot(snapshot: PortfolioSnapshot) -> Dict[str, Any]:
    return {
        "id": snapshot.id,
        "user_id": snapshot.user_id,
        "snapshot_date": _serialize_date(snapshot.snapshot_date),
        "portfolio_value": serialize_decimal(snapshot.portfolio_value),
        "currency": snapshot.portfolio_money.currency,
        "net_cash_flow": serialize_decimal(snapshot.net_cash_flow),
        "total_market_value": serialize_decimal(snapshot.total_market_value),
        "total_realized_pl": serialize_decimal(snapshot.total_realized_pl),
        "total_unrealized_pl": serialize_decimal(snapshot.total_unrealized_pl),
        "open_positions_count": snapshot.open_positions_count,
        "total_positions_count": snapshot.total_positions_count,
        "positions_breakdown": {
            name: {"count": entry.count, "value": serialize_decimal(entry.value)}
            for name, entry in snapshot.positions_breakdown.items()
        },
        "stale_symbols": list(snapshot.stale_symbols),
        "daily_pl_change": serialize_decimal(snapshot.daily_pl_change),
        "daily_pl_percent": serialize_decimal(snapshot.daily_pl_percent),
    }


def serialize_fault(fault: ReconciliationFault) -> Dict[str, Any]:
    return {
        "id": fault.id,
        "user_id": fault.user_id,
        "transaction_id": fault.transaction_id,
        "instrument_key": fault.instrument_key,
        "kind": fault.kind,
        "shortfall": serialize_decimal(fault.shortfall),
        "detail": fault.detail,
        "created_at": fault.created_at,
        "resolved_at": fault.resolved_at,
    }
