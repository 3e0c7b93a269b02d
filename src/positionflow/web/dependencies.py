"""Request-scoped providers for the JSON API."""

from __future__ import annotations

from ..persistence import SQLiteRepository, open_repository


def get_repository() -> SQLiteRepository:
    """Repository shared with the CLI; tests swap it through ``app.dependency_overrides``."""
    return open_repository()
