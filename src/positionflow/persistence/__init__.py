"""Persistence utilities for positionflow."""

from .repository import PositionStatusFilter, SQLiteRepository, open_repository
from .storage import DB_ENV_VAR, SQLiteStorage, get_storage

__all__ = [
    "DB_ENV_VAR",
    "PositionStatusFilter",
    "SQLiteRepository",
    "SQLiteStorage",
    "get_storage",
    "open_repository",
]
