"""FastAPI application exposing positions, strategies, snapshots and faults as JSON."""

from __future__ import annotations

from datetime import date, datetime

from fastapi import Depends, FastAPI, HTTPException, Query

from .. import __version__
from ..persistence import SQLiteRepository
from ..services.json_serializer import (
    serialize_fault,
    serialize_match,
    serialize_position,
    serialize_snapshot,
    serialize_strategy,
)
from ..services.strategy_detection import recompute_strategies
from .dependencies import get_repository

POSITION_STATUSES = {"all", "open", "terminal", "closed", "assigned", "exercised", "expired"}
STRATEGY_STATUSES = {"open", "closed", "expired", "assigned"}
ASSET_TYPES = {"stock", "option", "crypto", "futures"}


def _clean(value: str | None) -> str | None:
    return (value or "").strip() or None


def _parse_date_param(value: str | None, name: str) -> date | None:
    """Parse a YYYY-MM-DD query parameter, rejecting malformed input."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}") from exc


def create_app() -> FastAPI:  # noqa: C901
    """Construct and return the FastAPI application."""
    app = FastAPI(title="PositionFlow API", version=__version__)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/positions", tags=["api"])
    async def positions_api(
        user_id: str | None = Query(default=None),
        status: str = Query(default="all"),
        asset_type: str | None = Query(default=None),
        symbol: str | None = Query(default=None),
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """Positions filtered by status, asset type and symbol."""
        status_filter = (status or "all").strip().lower()
        if status_filter not in POSITION_STATUSES:
            raise HTTPException(status_code=400, detail="Unsupported status filter")
        asset_filter = _clean(asset_type)
        if asset_filter is not None:
            asset_filter = asset_filter.lower()
            if asset_filter not in ASSET_TYPES:
                raise HTTPException(status_code=400, detail="Unsupported asset type")

        rows = repository.fetch_positions(
            user_id=_clean(user_id),
            status=status_filter,  # type: ignore[arg-type]
            asset_type=asset_filter,
            symbol=_clean(symbol),
        )
        return {"positions": [serialize_position(row) for row in rows]}

    @app.get("/api/positions/{position_id}/matches", tags=["api"])
    async def position_matches_api(
        position_id: int,
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """FIFO audit trail of one position."""
        position = repository.get_position(position_id)
        if position is None:
            raise HTTPException(status_code=404, detail="Position not found")
        return {
            "position": serialize_position(position),
            "matches": [serialize_match(row) for row in repository.fetch_matches(position_id)],
        }

    @app.get("/api/strategies", tags=["api"])
    async def strategies_api(
        user_id: str | None = Query(default=None),
        status: str | None = Query(default=None),
        symbol: str | None = Query(default=None),
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """Strategies with their legs and risk metrics."""
        status_filter = _clean(status)
        if status_filter is not None and status_filter.lower() not in STRATEGY_STATUSES:
            raise HTTPException(status_code=400, detail="Unsupported status filter")
        rows = repository.fetch_strategies(
            user_id=_clean(user_id),
            status=status_filter.lower() if status_filter else None,
            symbol=_clean(symbol),
        )
        return {"strategies": [serialize_strategy(row) for row in rows]}

    @app.post("/api/strategies/recompute", tags=["api"])
    async def recompute_strategies_api(
        user_id: str | None = Query(default=None),
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """Repair operation: rebuild every strategy from its live legs."""
        rows = recompute_strategies(repository, _clean(user_id))
        return {"recomputed": len(rows), "strategies": [serialize_strategy(row) for row in rows]}

    @app.get("/api/snapshots", tags=["api"])
    async def snapshots_api(
        user_id: str = Query(...),
        start: str | None = Query(default=None),
        end: str | None = Query(default=None),
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """Snapshots of one user over an inclusive date range."""
        start_date = _parse_date_param(start, "start")
        end_date = _parse_date_param(end, "end")
        if start_date and end_date and start_date > end_date:
            raise HTTPException(status_code=400, detail="start must not be after end")
        rows = repository.fetch_snapshots(user_id, start=start_date, end=end_date)
        return {"snapshots": [serialize_snapshot(row) for row in rows]}

    @app.get("/api/snapshots/{snapshot_date}", tags=["api"])
    async def snapshot_api(
        snapshot_date: str,
        user_id: str = Query(...),
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """The snapshot of one user for one date."""
        parsed = _parse_date_param(snapshot_date, "snapshot date")
        assert parsed is not None
        row = repository.get_snapshot(user_id, parsed)
        if row is None:
            raise HTTPException(status_code=404, detail="Snapshot not found")
        return {"snapshot": serialize_snapshot(row)}

    @app.get("/api/faults", tags=["api"])
    async def faults_api(
        user_id: str | None = Query(default=None),
        include_resolved: bool = Query(default=False),
        repository: SQLiteRepository = Depends(get_repository),
    ) -> dict[str, object]:
        """Operator queue of reconciliation faults."""
        rows = repository.fetch_faults(user_id=_clean(user_id), include_resolved=include_resolved)
        return {"faults": [serialize_fault(row) for row in rows]}

    return app
