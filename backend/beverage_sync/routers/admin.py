"""Admin endpoints: trigger and inspect background runs, check data freshness."""

import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from beverage_sync.config import RunKind, get_settings
from beverage_sync.database import Store, get_store
from beverage_sync.errors import RemoteCommandError
from beverage_sync.limiter import limiter
from beverage_sync.schemas.admin import FreshnessReport, StoreBoundaries
from beverage_sync.schemas.run import RunOptions, RunStatus, StartResult, StartStatus
from beverage_sync.services.control import RemoteRunController, RunController, get_controller
from beverage_sync.services.freshness import check_new_data, store_boundaries
from beverage_sync.services.soda_client import SODAClient

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

settings = get_settings()


def get_run_controller() -> RunController | RemoteRunController:
    """Dependency: local controller, or the ssh-backed one when a remote host is set."""
    return get_controller(get_settings())


def get_soda_client() -> SODAClient:
    return SODAClient.from_settings(get_settings())


def _unreachable(e: RemoteCommandError) -> HTTPException:
    logger.error(f"Orchestrator host unreachable: {e}")
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Orchestrator host unreachable, retry later: {e}",
    )


@router.get("/runs/{kind}", response_model=RunStatus)
async def get_run_status(
    kind: RunKind,
    controller: Annotated[RunController | RemoteRunController, Depends(get_run_controller)],
) -> RunStatus:
    """Combined lock, session and log-tail status for one run kind."""
    try:
        return await controller.status(kind)
    except RemoteCommandError as e:
        raise _unreachable(e) from e


@router.post(
    "/runs/{kind}",
    response_model=StartResult,
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"model": StartResult, "description": "Already running"}},
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def start_run(
    request: Request,
    kind: RunKind,
    controller: Annotated[RunController | RemoteRunController, Depends(get_run_controller)],
    options: Annotated[RunOptions | None, Body()] = None,
):
    """
    Launch a detached run of ``kind``.

    Returns 202 once launched, 409 with the holder's start time and pid when
    a run is already live, 502 when the orchestrator host cannot be reached.
    """
    try:
        result = await controller.start(kind, options or RunOptions())
    except RemoteCommandError as e:
        raise _unreachable(e) from e

    if result.status == StartStatus.ALREADY_RUNNING:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=result.model_dump(mode="json", by_alias=True),
        )
    logger.info(result.message)
    return result


@router.get("/backfill/boundaries", response_model=StoreBoundaries)
async def get_backfill_boundaries(
    store: Annotated[Store, Depends(get_store)],
) -> StoreBoundaries:
    """Date range currently covered by the store; backfill extends it backwards."""
    return await store_boundaries(store)


@router.post("/ingestion/check", response_model=FreshnessReport)
async def check_ingestion(
    store: Annotated[Store, Depends(get_store)],
    client: Annotated[SODAClient, Depends(get_soda_client)],
) -> FreshnessReport:
    """Report months available in the API but missing from the store."""
    return await check_new_data(store, client, get_settings())
