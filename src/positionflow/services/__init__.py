"""Services for ledger reconciliation."""

from .display import format_currency, format_percent, format_quantity
from .engine import InstrumentLocks, ReconciliationEngine, ReconciliationReport
from .json_serializer import (
    serialize_decimal,
    serialize_fault,
    serialize_match,
    serialize_position,
    serialize_snapshot,
    serialize_strategy,
)
from .lot_matching import (
    MatchResult,
    match_instrument,
    match_transactions,
    match_transactions_with_errors,
)
from .pnl import market_value, realized_leg, unrealized_leg, value_position
from .quotes import HttpQuoteProvider, Quote, QuoteRequest, StaticQuoteProvider, mark_price
from .snapshots import generate_snapshot, generate_snapshots
from .strategy_detection import (
    classify_legs,
    detect_strategies,
    recompute_strategies,
    refresh_strategy,
    risk_metrics,
)

__all__ = [
    "HttpQuoteProvider",
    "InstrumentLocks",
    "MatchResult",
    "Quote",
    "QuoteRequest",
    "ReconciliationEngine",
    "ReconciliationReport",
    "StaticQuoteProvider",
    "classify_legs",
    "detect_strategies",
    "format_currency",
    "format_percent",
    "format_quantity",
    "generate_snapshot",
    "generate_snapshots",
    "mark_price",
    "market_value",
    "match_instrument",
    "match_transactions",
    "match_transactions_with_errors",
    "realized_leg",
    "recompute_strategies",
    "refresh_strategy",
    "risk_metrics",
    "serialize_decimal",
    "serialize_fault",
    "serialize_match",
    "serialize_position",
    "serialize_snapshot",
    "serialize_strategy",
    "unrealized_leg",
    "value_position",
]
