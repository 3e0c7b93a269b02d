"""
Core data models for ledger reconciliation.

Ledger inputs (transactions and cash movements) are Pydantic models so that records handed over
by the import layer are validated once at the boundary. Derived state produced by the engine
(positions, matches, strategies, snapshots) uses plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

AssetType = Literal["stock", "option", "crypto", "futures"]
OptionType = Literal["call", "put"]
Side = Literal["long", "short"]
PositionStatus = Literal["open", "closed", "assigned", "exercised", "expired"]
StrategyStatus = Literal["open", "closed", "expired", "assigned"]
Direction = Literal["bullish", "bearish", "neutral"]
StrategyType = Literal[
    "single_option",
    "covered_call",
    "cash_secured_put",
    "vertical_spread",
    "ratio_spread",
    "iron_condor",
    "iron_butterfly",
    "butterfly",
    "straddle",
    "strangle",
    "calendar_spread",
    "diagonal_spread",
    "custom",
]

TERMINAL_POSITION_STATUSES = frozenset({"closed", "assigned", "exercised", "expired"})
ZERO = Decimal("0")


class Transaction(BaseModel):
    """A single broker fill as recorded in the append-only ledger."""

    id: Optional[int] = Field(None, description="Ledger row id, assigned on insert")
    user_id: str = Field(..., description="Owner of the transaction")
    activity_date: date = Field(..., description="Trade date")
    symbol: str = Field(..., description="Underlying symbol (e.g., 'AAPL')")
    instrument: Optional[str] = Field(None, description="Broker instrument label")
    description: str = Field("", description="Broker description")
    transaction_code: str = Field(..., description="Broker code, e.g. BTO, STC, OEXP, Buy")
    asset_type: AssetType
    quantity: Decimal = Field(..., description="Signed quantity as reported by the broker")
    price: Decimal = Field(Decimal("0"), description="Per-unit price, fees embedded")
    amount: Decimal = Field(..., description="Total cash impact; credit positive, debit negative")
    fees: Decimal = Field(Decimal("0"), description="Fees already embedded in amount")
    strike_price: Optional[Decimal] = None
    expiration_date: Optional[date] = None
    option_type: Optional[OptionType] = None
    contract_month: Optional[str] = None
    multiplier: Optional[Decimal] = Field(None, description="Explicit contract multiplier")
    is_opening: bool
    is_long: bool = Field(..., description="True for buys (BTO/BTC)")
    position_id: Optional[int] = None
    strategy_id: Optional[int] = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v):
        cleaned = v.strip().upper()
        if not cleaned:
            raise ValueError("symbol must not be empty")
        return cleaned

    @field_validator("transaction_code")
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper()

    @field_validator("asset_type", mode="before")
    @classmethod
    def normalize_asset_type(cls, v):
        if isinstance(v, str):
            lowered = v.strip().lower()
            return {"stocks": "stock", "options": "option", "future": "futures"}.get(
                lowered, lowered
            )
        return v

    @field_validator("option_type", mode="before")
    @classmethod
    def normalize_option_type(cls, v):
        if v is None or v == "":
            return None
        lowered = str(v).strip().lower()
        if lowered in {"c", "call"}:
            return "call"
        if lowered in {"p", "put"}:
            return "put"
        raise ValueError('option_type must be "call" or "put"')

    @field_validator("contract_month")
    @classmethod
    def normalize_contract_month(cls, v):
        if v is None:
            return None
        return v.strip().upper() or None

    @model_validator(mode="after")
    def validate_option_fields(self):
        if self.asset_type == "option":
            missing = [
                name
                for name in ("strike_price", "expiration_date", "option_type")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"option transactions require {', '.join(missing)}")
        return self

    @property
    def abs_quantity(self) -> Decimal:
        """Unsigned quantity used for lot accounting."""
        return abs(self.quantity)

    @property
    def side(self) -> Side:
        """Side of the position this transaction opens (only meaningful for openings)."""
        return "long" if self.is_long else "short"


class CashTransaction(BaseModel):
    """A cash-ledger movement (deposit, withdrawal, dividend, margin posting...)."""

    id: Optional[int] = None
    user_id: str
    transaction_code: str
    amount: Decimal
    activity_date: date
    description: str = ""

    @field_validator("transaction_code")
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper()


@dataclass(frozen=True)
class Money:
    """Amount tagged with its currency. Only same-currency arithmetic is supported."""

    amount: Decimal
    currency: str = "USD"

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        if other.currency != self.currency:
            raise ValueError(f"Cannot add {other.currency} to {self.currency}")
        return Money(self.amount + other.amount, self.currency)

    def __str__(self) -> str:
        return f"{self.amount:,.2f} {self.currency}"


@dataclass
class Position:
    """One flat-to-flat lifecycle of a single instrument key on one side."""

    position_key: str
    user_id: str
    symbol: str
    asset_type: str
    side: Side
    multiplier: Decimal
    opened_at: date
    strike_price: Optional[Decimal] = None
    expiration_date: Optional[date] = None
    option_type: Optional[str] = None
    contract_month: Optional[str] = None
    opening_quantity: Decimal = ZERO
    current_quantity: Decimal = ZERO
    average_opening_price: Decimal = ZERO
    total_cost_basis: Decimal = ZERO
    open_cost_basis: Decimal = ZERO
    total_closing_amount: Decimal = ZERO
    realized_pl: Decimal = ZERO
    unrealized_pl: Decimal = ZERO
    status: PositionStatus = "open"
    opening_transaction_ids: List[int] = field(default_factory=list)
    closing_transaction_ids: List[int] = field(default_factory=list)
    closed_at: Optional[date] = None
    needs_reconciliation: bool = False
    strategy_id: Optional[int] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_POSITION_STATUSES

    @property
    def is_long(self) -> bool:
        return self.side == "long"


@dataclass(frozen=True)
class PositionMatch:
    """One FIFO pairing of an opening slice with a closing slice."""

    position_key: str
    opening_transaction_id: int
    closing_transaction_id: int
    matched_quantity: Decimal
    opening_price: Decimal
    closing_price: Decimal
    realized_pl: Decimal
    matched_at: date
    position_id: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class StrategyLeg:
    """Display snapshot of a Position participating in a Strategy."""

    position_key: str
    asset_type: str
    side: str
    quantity: Decimal
    opening_price: Decimal
    status: str
    strike: Optional[Decimal] = None
    expiration: Optional[date] = None
    option_type: Optional[str] = None
    position_id: Optional[int] = None


@dataclass
class Strategy:
    """A named grouping of option legs opened together on one underlying."""

    strategy_key: str
    user_id: str
    strategy_type: StrategyType
    underlying_symbol: str
    opened_at: date
    legs: Tuple[StrategyLeg, ...] = ()
    direction: Optional[Direction] = None
    confidence: Decimal = Decimal("1")
    expiration_date: Optional[date] = None
    total_opening_cost: Decimal = ZERO
    total_closing_proceeds: Decimal = ZERO
    realized_pl: Decimal = ZERO
    unrealized_pl: Decimal = ZERO
    status: StrategyStatus = "open"
    closed_at: Optional[date] = None
    max_risk: Optional[Decimal] = None
    max_profit: Optional[Decimal] = None
    breakeven_points: Tuple[Decimal, ...] = ()
    needs_reconciliation: bool = False
    id: Optional[int] = None

    @property
    def leg_count(self) -> int:
        return len(self.legs)

    @property
    def is_open(self) -> bool:
        return self.status == "open"


@dataclass(frozen=True)
class AssetBreakdown:
    """Count and market value of the open positions of one asset class."""

    count: int = 0
    value: Decimal = ZERO


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Point-in-time rollup of a user's portfolio."""

    user_id: str
    snapshot_date: date
    portfolio_value: Decimal
    net_cash_flow: Decimal
    total_market_value: Decimal
    total_realized_pl: Decimal
    total_unrealized_pl: Decimal
    open_positions_count: int
    total_positions_count: int
    positions_breakdown: Dict[str, AssetBreakdown]
    stale_symbols: Tuple[str, ...] = ()
    daily_pl_change: Optional[Decimal] = None
    daily_pl_percent: Optional[Decimal] = None
    id: Optional[int] = None

    @property
    def portfolio_money(self) -> Money:
        return Money(self.portfolio_value)

    @property
    def is_stale(self) -> bool:
        return bool(self.stale_symbols)


@dataclass(frozen=True)
class ReconciliationFault:
    """Data-integrity problem queued for an operator."""

    user_id: str
    transaction_id: int
    instrument_key: str
    kind: str
    shortfall: Decimal
    detail: str
    created_at: Optional[str] = None
    resolved_at: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None
