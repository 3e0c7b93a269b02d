"""Core data models and instrument identity."""

from .instruments import InstrumentKey, multiplier_for, terminal_status_for
from .models import (
    CashTransaction,
    PortfolioSnapshot,
    Position,
    PositionMatch,
    ReconciliationFault,
    Strategy,
    StrategyLeg,
    Transaction,
)

__all__ = [
    "CashTransaction",
    "InstrumentKey",
    "PortfolioSnapshot",
    "Position",
    "PositionMatch",
    "ReconciliationFault",
    "Strategy",
    "StrategyLeg",
    "Transaction",
    "multiplier_for",
    "terminal_status_for",
]
