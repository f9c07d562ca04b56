"""Health and readiness endpoints."""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from beverage_sync.config import RunKind, get_settings
from beverage_sync.database import Store, get_store
from beverage_sync.schemas.admin import StoreBoundaries
from beverage_sync.services.control import read_lock_state
from beverage_sync.services.freshness import store_boundaries

router = APIRouter(tags=["health"])


class RunLockState(BaseModel):
    """Lock-file view of one run kind."""

    running: bool
    started_at: str | None = None
    lock_stale: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    store: StoreBoundaries
    runs: dict[str, RunLockState]


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: Annotated[Store, Depends(get_store)],
) -> HealthResponse:
    """
    Health check endpoint with store coverage and run state.

    Run state comes from lock files only, so this never shells out.
    """
    settings = get_settings()
    runs: dict[str, RunLockState] = {}
    for kind in RunKind:
        holder, stale = read_lock_state(settings.lock_path(kind))
        runs[kind.value] = RunLockState(
            running=holder is not None and not stale,
            started_at=holder.started_at if holder else None,
            lock_stale=stale,
        )

    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        store=await store_boundaries(store),
        runs=runs,
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Simple readiness check for container orchestration."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> dict:
    """Simple liveness check for container orchestration."""
    return {"status": "alive"}
