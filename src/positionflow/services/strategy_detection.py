"""Option strategy detection.

Option positions of one underlying opened on the same day are grouped and classified into a
named strategy (vertical spread, iron condor, straddle ...). Strategies carry a denormalized
display cache of their legs plus closed-form risk metrics, and are recomputed from the live
positions whenever the ledger changes.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..core.instruments import FUTURES_MARGIN_CODES
from ..core.models import (
    ZERO,
    Direction,
    Position,
    Strategy,
    StrategyLeg,
    StrategyStatus,
    StrategyType,
)
from ..errors import ClassificationError
from ..persistence import SQLiteRepository
from .pnl import CENTS, quantize_money

logger = structlog.get_logger(__name__)

FULL_CONFIDENCE = Decimal("1")
CUSTOM_CONFIDENCE = Decimal("0.25")

RiskMetrics = Tuple[Optional[Decimal], Optional[Decimal], Tuple[Decimal, ...]]


@dataclass(frozen=True)
class Classification:
    """Outcome of matching a set of legs against the known strategy patterns."""

    strategy_type: StrategyType
    direction: Optional[Direction]
    confidence: Decimal = FULL_CONFIDENCE


def _by_strike(legs: Sequence[Position]) -> List[Position]:
    return sorted(legs, key=lambda leg: leg.strike_price or ZERO)


def _same_expiration(legs: Sequence[Position]) -> bool:
    return len({leg.expiration_date for leg in legs}) == 1


def _spread_direction(long_leg: Position, short_leg: Position) -> Direction:
    """Long strike below short strike is bullish for calls and puts alike."""
    long_strike = long_leg.strike_price or ZERO
    short_strike = short_leg.strike_price or ZERO
    return "bullish" if long_strike < short_strike else "bearish"


def _classify_iron(legs: Sequence[Position]) -> Optional[Classification]:
    calls = [leg for leg in legs if leg.option_type == "call"]
    puts = [leg for leg in legs if leg.option_type == "put"]
    if len(calls) != 2 or len(puts) != 2 or not _same_expiration(legs):
        return None
    long_calls = [leg for leg in calls if leg.is_long]
    short_calls = [leg for leg in calls if not leg.is_long]
    long_puts = [leg for leg in puts if leg.is_long]
    short_puts = [leg for leg in puts if not leg.is_long]
    if not (long_calls and short_calls and long_puts and short_puts):
        return None

    long_call, short_call = long_calls[0], short_calls[0]
    long_put, short_put = long_puts[0], short_puts[0]
    inside = (
        (long_put.strike_price or ZERO) < (short_put.strike_price or ZERO)
        and (short_put.strike_price or ZERO) <= (short_call.strike_price or ZERO)
        and (short_call.strike_price or ZERO) < (long_call.strike_price or ZERO)
    )
    if not inside:
        return None
    if short_put.strike_price == short_call.strike_price:
        return Classification("iron_butterfly", "neutral")
    return Classification("iron_condor", "neutral")


def _classify_butterfly(legs: Sequence[Position]) -> Optional[Classification]:
    if len({leg.option_type for leg in legs}) != 1 or not _same_expiration(legs):
        return None
    lower, middle, upper = _by_strike(legs)
    strikes = [leg.strike_price for leg in (lower, middle, upper)]
    if len(set(strikes)) != 3:
        return None
    wings_match = lower.side == upper.side and middle.side != lower.side
    ratio_matches = (
        lower.opening_quantity == upper.opening_quantity
        and middle.opening_quantity == lower.opening_quantity * 2
    )
    if wings_match and ratio_matches:
        return Classification("butterfly", "neutral")
    return None


def _classify_pair(legs: Sequence[Position]) -> Optional[Classification]:
    first, second = legs
    if first.option_type == second.option_type:
        if first.side == second.side:
            return None
        long_leg, short_leg = (first, second) if first.is_long else (second, first)
        if first.expiration_date == second.expiration_date:
            if first.strike_price == second.strike_price:
                return None
            direction = _spread_direction(long_leg, short_leg)
            if first.opening_quantity != second.opening_quantity:
                return Classification("ratio_spread", direction)
            return Classification("vertical_spread", direction)
        if first.strike_price == second.strike_price:
            return Classification("calendar_spread", "neutral")
        return Classification("diagonal_spread", _spread_direction(long_leg, short_leg))

    if first.expiration_date != second.expiration_date or first.side != second.side:
        return None
    if first.strike_price == second.strike_price:
        return Classification("straddle", "neutral")
    return Classification("strangle", "neutral")


def _classify_single(
    leg: Position, *, stock_shares: Decimal, available_cash: Optional[Decimal]
) -> Classification:
    contracts = leg.opening_quantity
    if not leg.is_long and leg.option_type == "call":
        if stock_shares >= contracts * leg.multiplier:
            return Classification("covered_call", "neutral")
        return Classification("single_option", "bearish")
    if not leg.is_long and leg.option_type == "put":
        required = (leg.strike_price or ZERO) * leg.multiplier * contracts
        if available_cash is not None and available_cash >= required:
            return Classification("cash_secured_put", "bullish")
        return Classification("single_option", "bullish")
    return Classification("single_option", "bullish" if leg.option_type == "call" else "bearish")


def classify_legs(
    legs: Sequence[Position],
    *,
    stock_shares: Decimal = ZERO,
    available_cash: Optional[Decimal] = None,
) -> Classification:
    """
    Classify option legs opened together on one underlying.

    Patterns are tried in priority order and the first full match wins. Combinations that match
    nothing become ``custom`` with a low confidence instead of failing.
    """
    if not legs:
        raise ClassificationError("cannot classify an empty set of legs")
    if any(leg.asset_type != "option" for leg in legs):
        raise ClassificationError("only option positions can form a strategy")
    if len({leg.symbol for leg in legs}) != 1:
        raise ClassificationError("strategy legs must share one underlying")

    if len(legs) == 1:
        return _classify_single(legs[0], stock_shares=stock_shares, available_cash=available_cash)

    match: Optional[Classification] = None
    if len(legs) == 4:
        match = _classify_iron(legs)
    elif len(legs) == 3:
        match = _classify_butterfly(legs)
    elif len(legs) == 2:
        match = _classify_pair(legs)
    if match is not None:
        return match
    return Classification("custom", None, CUSTOM_CONFIDENCE)


def _per_share(amount: Decimal, leg: Position) -> Decimal:
    units = leg.multiplier * leg.opening_quantity
    if units == 0:
        return ZERO
    return abs(amount) / units


def _price(value: Decimal) -> Decimal:
    return value.quantize(CENTS)


def _vertical_metrics(legs: Sequence[Position], net: Decimal) -> RiskMetrics:
    long_leg = next(leg for leg in legs if leg.is_long)
    short_leg = next(leg for leg in legs if not leg.is_long)
    long_strike = long_leg.strike_price or ZERO
    short_strike = short_leg.strike_price or ZERO
    width = abs(long_strike - short_strike) * long_leg.multiplier * long_leg.opening_quantity
    per_share = _per_share(net, long_leg)
    is_call = long_leg.option_type == "call"

    if net < 0:
        max_risk, max_profit = -net, width + net
        breakeven = long_strike + per_share if is_call else long_strike - per_share
    else:
        max_risk, max_profit = width - net, net
        breakeven = short_strike + per_share if is_call else short_strike - per_share
    return quantize_money(max_risk), quantize_money(max_profit), (_price(breakeven),)


def _expiry_payoff(legs: Sequence[Position], net: Decimal, price: Decimal) -> Decimal:
    payoff = net
    for leg in legs:
        strike = leg.strike_price or ZERO
        if leg.option_type == "call":
            intrinsic = max(price - strike, ZERO)
        else:
            intrinsic = max(strike - price, ZERO)
        signed = leg.opening_quantity if leg.is_long else -leg.opening_quantity
        payoff += signed * leg.multiplier * intrinsic
    return payoff


def _ratio_metrics(legs: Sequence[Position], net: Decimal) -> RiskMetrics:
    """
    Metrics of a same-expiration pair with unequal quantities.

    The expiry payoff is piecewise linear between strikes, so extremes sit at zero or a strike
    and breakevens are found by interpolation. Past the top strike only calls keep a slope;
    when more calls are sold than bought the loss there is unbounded.
    """
    points = sorted({ZERO, *(leg.strike_price or ZERO for leg in legs)})
    payoffs = [_expiry_payoff(legs, net, point) for point in points]
    slope = sum(
        (
            (leg.opening_quantity if leg.is_long else -leg.opening_quantity) * leg.multiplier
            for leg in legs
            if leg.option_type == "call"
        ),
        ZERO,
    )

    breakevens: List[Decimal] = []
    for (x0, y0), (x1, y1) in zip(zip(points, payoffs), zip(points[1:], payoffs[1:])):
        if y1 == 0:
            breakevens.append(_price(x1))
        elif y0 != 0 and (y0 < 0) != (y1 < 0):
            breakevens.append(_price(x0 - y0 * (x1 - x0) / (y1 - y0)))
    if slope != 0 and payoffs[-1] != 0 and (payoffs[-1] < 0) != (slope < 0):
        breakevens.append(_price(points[-1] - payoffs[-1] / slope))

    worst, best = min(payoffs), max(payoffs)
    max_risk = None if slope < 0 else quantize_money(max(-worst, ZERO))
    max_profit = None if slope > 0 else quantize_money(max(best, ZERO))
    return max_risk, max_profit, tuple(breakevens)


def _iron_metrics(legs: Sequence[Position], net: Decimal) -> RiskMetrics:
    if net <= 0:
        return quantize_money(-net), None, ()
    calls = _by_strike([leg for leg in legs if leg.option_type == "call"])
    puts = _by_strike([leg for leg in legs if leg.option_type == "put"])
    short_call = next(leg for leg in calls if not leg.is_long)
    short_put = next(leg for leg in puts if not leg.is_long)
    call_width = (calls[1].strike_price or ZERO) - (calls[0].strike_price or ZERO)
    put_width = (puts[1].strike_price or ZERO) - (puts[0].strike_price or ZERO)
    wing = max(call_width, put_width) * short_call.multiplier * short_call.opening_quantity
    per_share = _per_share(net, short_call)
    breakevens = (
        _price((short_put.strike_price or ZERO) - per_share),
        _price((short_call.strike_price or ZERO) + per_share),
    )
    return quantize_money(wing - net), quantize_money(net), breakevens


def _butterfly_metrics(legs: Sequence[Position], net: Decimal) -> RiskMetrics:
    lower, middle, upper = _by_strike(legs)
    width = (
        ((middle.strike_price or ZERO) - (lower.strike_price or ZERO))
        * lower.multiplier
        * lower.opening_quantity
    )
    per_share = _per_share(net, lower)
    breakevens = (
        _price((lower.strike_price or ZERO) + per_share),
        _price((upper.strike_price or ZERO) - per_share),
    )
    if net < 0:
        return quantize_money(-net), quantize_money(width + net), breakevens
    return quantize_money(width - net), quantize_money(net), breakevens


def _straddle_metrics(legs: Sequence[Position], net: Decimal) -> RiskMetrics:
    call = next(leg for leg in legs if leg.option_type == "call")
    put = next(leg for leg in legs if leg.option_type == "put")
    per_share = _per_share(net, call)
    breakevens = (
        _price((put.strike_price or ZERO) - per_share),
        _price((call.strike_price or ZERO) + per_share),
    )
    if call.is_long:
        return quantize_money(-net), None, breakevens
    return None, quantize_money(net), breakevens


def _single_metrics(leg: Position, net: Decimal) -> RiskMetrics:
    strike = leg.strike_price or ZERO
    per_share = _per_share(net, leg)
    notional = strike * leg.multiplier * leg.opening_quantity
    if leg.option_type == "call":
        breakeven = _price(strike + per_share)
        if leg.is_long:
            return quantize_money(-net), None, (breakeven,)
        return None, quantize_money(net), (breakeven,)

    breakeven = _price(strike - per_share)
    if leg.is_long:
        return quantize_money(-net), quantize_money(notional + net), (breakeven,)
    return quantize_money(notional - net), quantize_money(net), (breakeven,)


def _covered_call_metrics(
    leg: Position, net: Decimal, stock_cost_per_share: Optional[Decimal]
) -> RiskMetrics:
    if stock_cost_per_share is None:
        return _single_metrics(leg, net)
    shares = leg.multiplier * leg.opening_quantity
    strike = leg.strike_price or ZERO
    per_share = _per_share(net, leg)
    max_profit = net + (strike - stock_cost_per_share) * shares
    max_risk = stock_cost_per_share * shares - net
    breakeven = _price(stock_cost_per_share - per_share)
    return quantize_money(max_risk), quantize_money(max_profit), (breakeven,)


def risk_metrics(
    strategy_type: StrategyType,
    legs: Sequence[Position],
    total_opening_cost: Decimal,
    *,
    stock_cost_per_share: Optional[Decimal] = None,
) -> RiskMetrics:
    """Closed-form ``(max_risk, max_profit, breakeven_points)``; ``None`` means unbounded or n/a."""
    net = total_opening_cost
    if strategy_type == "vertical_spread":
        return _vertical_metrics(legs, net)
    if strategy_type == "ratio_spread":
        return _ratio_metrics(legs, net)
    if strategy_type in {"iron_condor", "iron_butterfly"}:
        return _iron_metrics(legs, net)
    if strategy_type == "butterfly":
        return _butterfly_metrics(legs, net)
    if strategy_type in {"straddle", "strangle"}:
        return _straddle_metrics(legs, net)
    if strategy_type in {"calendar_spread", "diagonal_spread"}:
        if net < 0:
            return quantize_money(-net), None, ()
        return None, None, ()
    if strategy_type in {"single_option", "cash_secured_put"}:
        return _single_metrics(legs[0], net)
    if strategy_type == "covered_call":
        return _covered_call_metrics(legs[0], net, stock_cost_per_share)
    return None, None, ()


def _leg_sort_key(leg: Position) -> Tuple[date, str, Decimal, int]:
    return (
        leg.expiration_date or date.max,
        leg.option_type or "",
        leg.strike_price or ZERO,
        leg.id or 0,
    )


def _strategy_status(legs: Sequence[Position]) -> StrategyStatus:
    if any(leg.is_open for leg in legs):
        return "open"
    statuses = {leg.status for leg in legs}
    if "expired" in statuses:
        return "expired"
    if statuses & {"assigned", "exercised"}:
        return "assigned"
    return "closed"


def build_legs(legs: Sequence[Position]) -> Tuple[StrategyLeg, ...]:
    """Rebuild the display cache of strategy legs from live positions."""
    return tuple(
        StrategyLeg(
            position_key=leg.position_key,
            position_id=leg.id,
            asset_type=leg.asset_type,
            side=leg.side,
            quantity=leg.opening_quantity,
            opening_price=leg.average_opening_price,
            status=leg.status,
            strike=leg.strike_price,
            expiration=leg.expiration_date,
            option_type=leg.option_type,
        )
        for leg in sorted(legs, key=_leg_sort_key)
    )


def refresh_strategy(
    strategy: Strategy,
    legs: Sequence[Position],
    *,
    stock_cost_per_share: Optional[Decimal] = None,
) -> Strategy:
    """
    Recompute every aggregate of ``strategy`` from the current state of its legs.

    Idempotent: refreshing twice with the same legs yields the same strategy.
    """
    if not legs:
        raise ClassificationError(f"strategy {strategy.strategy_key} has no legs")

    total_opening_cost = quantize_money(sum((leg.total_cost_basis for leg in legs), ZERO))
    status = _strategy_status(legs)
    closed_at = None
    if status != "open":
        closed_dates = [leg.closed_at for leg in legs if leg.closed_at is not None]
        closed_at = max(closed_dates) if closed_dates else None
    max_risk, max_profit, breakevens = risk_metrics(
        strategy.strategy_type,
        legs,
        total_opening_cost,
        stock_cost_per_share=stock_cost_per_share,
    )
    expirations = [leg.expiration_date for leg in legs if leg.expiration_date is not None]
    return replace(
        strategy,
        legs=build_legs(legs),
        expiration_date=min(expirations) if expirations else None,
        total_opening_cost=total_opening_cost,
        total_closing_proceeds=quantize_money(
            sum((leg.total_closing_amount for leg in legs), ZERO)
        ),
        realized_pl=quantize_money(sum((leg.realized_pl for leg in legs), ZERO)),
        unrealized_pl=quantize_money(
            sum((leg.unrealized_pl for leg in legs if leg.is_open), ZERO)
        ),
        status=status,
        closed_at=closed_at,
        max_risk=max_risk,
        max_profit=max_profit,
        breakeven_points=breakevens,
        needs_reconciliation=any(leg.needs_reconciliation for leg in legs),
    )


def strategy_key_for(user_id: str, symbol: str, opened_at: date, legs: Sequence[Position]) -> str:
    """Natural key of a strategy: user, underlying, open date and its leg positions."""
    leg_keys = ",".join(sorted(leg.position_key for leg in legs))
    return f"{user_id}|{symbol}|{opened_at.isoformat()}|{leg_keys}"


def build_strategy(
    legs: Sequence[Position],
    *,
    stock_shares: Decimal = ZERO,
    stock_cost_per_share: Optional[Decimal] = None,
    available_cash: Optional[Decimal] = None,
) -> Strategy:
    """Classify ``legs`` and return a fully refreshed, not yet persisted strategy."""
    classification = classify_legs(
        legs, stock_shares=stock_shares, available_cash=available_cash
    )
    first = legs[0]
    strategy = Strategy(
        strategy_key=strategy_key_for(first.user_id, first.symbol, first.opened_at, legs),
        user_id=first.user_id,
        strategy_type=classification.strategy_type,
        underlying_symbol=first.symbol,
        opened_at=first.opened_at,
        direction=classification.direction,
        confidence=classification.confidence,
    )
    return refresh_strategy(strategy, legs, stock_cost_per_share=stock_cost_per_share)


def group_candidate_legs(
    positions: Sequence[Position],
) -> Dict[Tuple[str, str, date], List[Position]]:
    """Group unattached option positions by ``(user, underlying, open date)``."""
    grouped: Dict[Tuple[str, str, date], List[Position]] = defaultdict(list)
    for position in positions:
        if position.asset_type != "option" or position.strategy_id is not None:
            continue
        grouped[(position.user_id, position.symbol, position.opened_at)].append(position)
    return dict(grouped)


@dataclass(frozen=True)
class _StockHolding:
    shares: Decimal
    cost_per_share: Optional[Decimal]


def _stock_holding(repository: SQLiteRepository, user_id: str, symbol: str) -> _StockHolding:
    longs = [
        position
        for position in repository.fetch_positions(
            user_id=user_id, status="open", asset_type="stock", symbol=symbol
        )
        if position.is_long
    ]
    shares = sum((position.current_quantity for position in longs), ZERO)
    if shares == 0:
        return _StockHolding(ZERO, None)
    basis = sum((abs(position.open_cost_basis) for position in longs), ZERO)
    return _StockHolding(shares, basis / shares)


def available_cash(repository: SQLiteRepository, user_id: str) -> Decimal:
    """Cash on the ledger, excluding futures margin postings."""
    return quantize_money(
        sum(
            (
                txn.amount
                for txn in repository.fetch_cash_transactions(user_id)
                if txn.transaction_code not in FUTURES_MARGIN_CODES
            ),
            ZERO,
        )
    )


def detect_strategies(repository: SQLiteRepository, user_id: str) -> List[Strategy]:
    """Attach every unattached option position of ``user_id`` to a new or existing strategy."""
    candidates = repository.fetch_positions(user_id=user_id, asset_type="option", unattached=True)
    detected: List[Strategy] = []
    if not candidates:
        return detected

    cash = available_cash(repository, user_id)
    for (_, symbol, opened_at), legs in sorted(group_candidate_legs(candidates).items()):
        holding = _stock_holding(repository, user_id, symbol)
        strategy = build_strategy(
            legs,
            stock_shares=holding.shares,
            stock_cost_per_share=holding.cost_per_share,
            available_cash=cash,
        )
        strategy_id = repository.save_strategy(strategy, legs)
        strategy = replace(strategy, id=strategy_id)
        logger.info(
            "strategy_detection.detected",
            user_id=user_id,
            symbol=symbol,
            opened_at=opened_at.isoformat(),
            strategy_type=strategy.strategy_type,
            confidence=str(strategy.confidence),
            legs=strategy.leg_count,
        )
        detected.append(strategy)
    return detected


def recompute_strategies(
    repository: SQLiteRepository, user_id: Optional[str] = None
) -> List[Strategy]:
    """
    Repair operation: refresh every stored strategy from its live legs.

    Strategies whose legs disappeared after a ledger replay are deleted. Safe to run at any
    time and as often as needed.
    """
    removed = repository.delete_orphan_strategies(user_id)
    if removed:
        logger.info("strategy_detection.orphans_removed", user_id=user_id, count=removed)

    refreshed: List[Strategy] = []
    for strategy in repository.fetch_strategies(user_id=user_id):
        assert strategy.id is not None
        legs = repository.fetch_positions(strategy_id=strategy.id)
        if not legs:
            continue
        holding = None
        if strategy.strategy_type == "covered_call":
            holding = _stock_holding(repository, strategy.user_id, strategy.underlying_symbol)
        updated = refresh_strategy(
            strategy,
            legs,
            stock_cost_per_share=holding.cost_per_share if holding else None,
        )
        if updated != strategy:
            repository.save_strategy(updated, legs)
        refreshed.append(updated)
    return refreshed
