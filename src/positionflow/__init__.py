"""positionflow: ledger reconciliation for stock, option, crypto and futures accounts."""

__version__ = "0.1.0"
