"""Exception types raised by the reconciliation engine."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class PositionFlowError(RuntimeError):
    """Base class for errors raised by positionflow."""


class OverCloseError(PositionFlowError):
    """Raised when a closing transaction exceeds the open quantity of its instrument."""

    def __init__(
        self,
        *,
        transaction_id: int,
        user_id: str,
        instrument: str,
        requested: Decimal,
        available: Decimal,
    ) -> None:
        self.transaction_id = transaction_id
        self.user_id = user_id
        self.instrument = instrument
        self.requested = requested
        self.available = available
        super().__init__(
            f"Transaction {transaction_id} closes {requested} of {instrument} "
            f"but only {available} is open (shortfall {self.shortfall})."
        )

    @property
    def shortfall(self) -> Decimal:
        return self.requested - self.available


class QuoteUnavailableError(PositionFlowError):
    """Raised by quote providers when no usable quote exists for a symbol."""

    def __init__(self, symbol: str, reason: Optional[str] = None) -> None:
        self.symbol = symbol
        self.reason = reason
        message = f"No quote available for {symbol}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class SnapshotWriteError(PositionFlowError):
    """Raised when a portfolio snapshot could not be persisted after retries."""

    def __init__(self, user_id: str, snapshot_date: str, attempts: int) -> None:
        self.user_id = user_id
        self.snapshot_date = snapshot_date
        self.attempts = attempts
        super().__init__(
            f"Failed to write snapshot for {user_id} on {snapshot_date} after {attempts} attempts."
        )


class ClassificationError(PositionFlowError):
    """Raised when a set of legs cannot be evaluated as a strategy at all."""
