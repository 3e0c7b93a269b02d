"""Instrument identity, transaction codes and contract multipliers.

Every ledger row resolves to an :class:`InstrumentKey`. Two transactions can only touch the same
position when every discriminator of their key is equal, so the key also names the unit of
serialization used by the reconciliation engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from .models import Position, PositionStatus, Transaction

OPTION_MULTIPLIER = Decimal("100")
UNIT_MULTIPLIER = Decimal("1")
EASTERN_TZ = ZoneInfo("US/Eastern")

EXPIRATION_CODE = "OEXP"
ASSIGNMENT_CODE = "OASGN"
EXERCISE_CODE = "OEXCS"
FUTURES_MARGIN_CODES = frozenset({"FUTURES_MARGIN", "FUTURES_MARGIN_RELEASE"})

_TERMINAL_STATUS_BY_CODE: Dict[str, PositionStatus] = {
    EXPIRATION_CODE: "expired",
    ASSIGNMENT_CODE: "assigned",
    EXERCISE_CODE: "exercised",
}

# Point values for common CME/CBOT/NYMEX/COMEX contracts.
FUTURES_MULTIPLIERS: Dict[str, Decimal] = {
    "ES": Decimal("50"),
    "MES": Decimal("5"),
    "NQ": Decimal("20"),
    "MNQ": Decimal("2"),
    "YM": Decimal("5"),
    "MYM": Decimal("0.5"),
    "RTY": Decimal("50"),
    "M2K": Decimal("5"),
    "CL": Decimal("1000"),
    "MCL": Decimal("100"),
    "NG": Decimal("10000"),
    "GC": Decimal("100"),
    "MGC": Decimal("10"),
    "SI": Decimal("5000"),
    "HG": Decimal("25000"),
    "ZB": Decimal("1000"),
    "ZN": Decimal("1000"),
    "ZC": Decimal("50"),
    "ZS": Decimal("50"),
    "6E": Decimal("125000"),
}

_CONTRACT_MONTH_RE = re.compile(r"\b([A-Z]{3}\d{2,4})\b")


def _strike_to_cents(value: Decimal) -> int:
    """Convert a strike price to an integer number of cents."""
    normalized = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int((normalized * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def parse_contract_month(description: str) -> Optional[str]:
    """Extract a ``DEC24``-style contract month token from a futures description."""
    match = _CONTRACT_MONTH_RE.search((description or "").upper())
    return match.group(1) if match else None


def terminal_status_for(transaction_code: str) -> PositionStatus:
    """Map the code of the transaction that flattened a position to its terminal status."""
    return _TERMINAL_STATUS_BY_CODE.get((transaction_code or "").upper(), "closed")


def multiplier_for(txn: Transaction) -> Decimal:
    """Return the contract multiplier that scales ``txn`` prices into dollars."""
    if txn.multiplier is not None and txn.multiplier > 0:
        return txn.multiplier
    if txn.asset_type == "option":
        return OPTION_MULTIPLIER
    if txn.asset_type == "futures":
        root = txn.symbol.lstrip("/").upper()
        return FUTURES_MULTIPLIERS.get(root, UNIT_MULTIPLIER)
    return UNIT_MULTIPLIER


def occ_symbol(symbol: str, expiration: date, option_type: str, strike: Decimal) -> str:
    """Build the OCC option symbol, e.g. ``AAPL250117C00150000``."""
    code = "C" if option_type.lower().startswith("c") else "P"
    strike_thousandths = int(
        (strike * Decimal("1000")).to_integral_value(rounding=ROUND_HALF_UP)
    )
    return f"{symbol.upper()}{expiration:%y%m%d}{code}{strike_thousandths:08d}"


@dataclass(frozen=True)
class InstrumentKey:
    """Grouping key for lot matching: user plus every instrument discriminator."""

    user_id: str
    symbol: str
    asset_type: str
    strike_price: Optional[Decimal] = None
    expiration_date: Optional[date] = None
    option_type: Optional[str] = None
    contract_month: Optional[str] = None

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "InstrumentKey":
        """Derive the instrument key of a ledger transaction."""
        contract_month = txn.contract_month
        if txn.asset_type == "futures" and contract_month is None:
            contract_month = parse_contract_month(txn.description)
        is_option = txn.asset_type == "option"
        return cls(
            user_id=txn.user_id,
            symbol=txn.symbol,
            asset_type=txn.asset_type,
            strike_price=txn.strike_price if is_option else None,
            expiration_date=(
                txn.expiration_date if txn.asset_type in {"option", "futures"} else None
            ),
            option_type=txn.option_type if is_option else None,
            contract_month=contract_month if txn.asset_type == "futures" else None,
        )

    @classmethod
    def from_position(cls, position: Position) -> "InstrumentKey":
        return cls(
            user_id=position.user_id,
            symbol=position.symbol,
            asset_type=position.asset_type,
            strike_price=position.strike_price,
            expiration_date=position.expiration_date,
            option_type=position.option_type,
            contract_month=position.contract_month,
        )

    @property
    def key_id(self) -> str:
        """Stable textual identifier, also used as the lock name."""
        parts = [self.user_id, self.asset_type, self.symbol]
        if self.asset_type == "option":
            code = "C" if (self.option_type or "").startswith("c") else "P"
            strike_cents = _strike_to_cents(self.strike_price or Decimal("0"))
            expiration = self.expiration_date.isoformat() if self.expiration_date else ""
            parts.extend([expiration, code, str(strike_cents)])
        elif self.asset_type == "futures":
            parts.append(self.contract_month or "")
            parts.append(self.expiration_date.isoformat() if self.expiration_date else "")
        return "|".join(parts)

    @property
    def display_name(self) -> str:
        if self.asset_type == "option" and self.strike_price is not None:
            expiration = self.expiration_date.isoformat() if self.expiration_date else "?"
            option_label = (self.option_type or "").upper()
            return f"{self.symbol} {expiration} {option_label} ${self.strike_price}"
        if self.asset_type == "futures" and self.contract_month:
            return f"{self.symbol} {self.contract_month}"
        return self.symbol

    def days_to_expiration(self, *, as_of: Optional[date | datetime] = None) -> Optional[int]:
        """Return the non-negative number of days from ``as_of`` to expiration."""
        if self.expiration_date is None:
            return None
        if as_of is None:
            as_of_date = datetime.now(EASTERN_TZ).date()
        elif isinstance(as_of, datetime):
            as_of_date = as_of.astimezone(EASTERN_TZ).date()
        else:
            as_of_date = as_of
        return max((self.expiration_date - as_of_date).days, 0)


def transaction_sort_key(txn: Transaction, sequence: int = 0) -> Tuple[date, int, int]:
    """Chronological order with ties broken by ledger insertion order."""
    return txn.activity_date, txn.id if txn.id is not None else sequence, sequence
