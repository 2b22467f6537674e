"""
Fetch run history, trigger and cancel endpoints.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import get_ingestion_scheduler
from app.scheduler.jobs import IngestionScheduler
from app.schemas.fetch_runs import (
    CancelResponse,
    FetchRunAcceptedResponse,
    FetchRunListResponse,
    FetchRunResponse,
    SourceListResponse,
    SourceRunningResponse,
)
from ingestion.coordinator import IngestionCoordinator
from ingestion.errors import UnknownSourceError

router = APIRouter(prefix="/fetch-runs", tags=["fetch-runs"])


def _require_source(coordinator: IngestionCoordinator, source: str) -> None:
    try:
        coordinator.get_definition(source)
    except UnknownSourceError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("", response_model=FetchRunListResponse)
def list_fetch_runs(
    source: str | None = Query(default=None, description="Optional source name filter"),
    status_filter: str | None = Query(default=None, alias="status", description="Optional status filter"),
    limit: int = Query(default=50, ge=1, le=500, description="Max runs returned"),
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> FetchRunListResponse:
    runs = scheduler.coordinator.list_runs(source=source, status=status_filter, limit=limit)
    return FetchRunListResponse(runs=[FetchRunResponse.from_record(run) for run in runs])


@router.get("/sources", response_model=SourceListResponse)
def list_sources(
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> SourceListResponse:
    return SourceListResponse(sources=scheduler.coordinator.sources)


@router.get("/sources/{source}/latest", response_model=FetchRunResponse)
def get_latest_fetch_run(
    source: str,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> FetchRunResponse:
    _require_source(scheduler.coordinator, source)
    run = scheduler.coordinator.get_latest(source)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No fetch runs recorded for source: {source}",
        )
    return FetchRunResponse.from_record(run)


@router.get("/sources/{source}/running", response_model=SourceRunningResponse)
def get_source_running(
    source: str,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> SourceRunningResponse:
    _require_source(scheduler.coordinator, source)
    return SourceRunningResponse(source=source, running=scheduler.coordinator.has_running(source))


@router.post(
    "/sources/{source}/trigger",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=FetchRunAcceptedResponse,
)
def trigger_fetch_run(
    source: str,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> FetchRunAcceptedResponse:
    _require_source(scheduler.coordinator, source)
    result, _ = scheduler.trigger_now(source)
    if result.skipped or result.run is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=result.reason or f"Source '{source}' already has an active fetch run.",
        )
    return FetchRunAcceptedResponse(
        run_id=result.run.id,
        source=result.run.source,
        status=result.run.status,
        started_at=result.run.started_at,
    )


@router.post("/sources/{source}/cancel", response_model=CancelResponse)
def cancel_source_run(
    source: str,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> CancelResponse:
    _require_source(scheduler.coordinator, source)
    return CancelResponse(source=source, cancelled=scheduler.cancel_source(source))


@router.get("/{run_id}", response_model=FetchRunResponse)
def get_fetch_run(
    run_id: UUID,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> FetchRunResponse:
    run = scheduler.coordinator.ledger.get_run(run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Fetch run not found: {run_id}",
        )
    return FetchRunResponse.from_record(run)


@router.post("/{run_id}/cancel", response_model=CancelResponse)
def cancel_fetch_run(
    run_id: UUID,
    scheduler: IngestionScheduler = Depends(get_ingestion_scheduler),
) -> CancelResponse:
    if not scheduler.cancel_run(run_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active fetch run in this process: {run_id}",
        )
    return CancelResponse(run_id=run_id, cancelled=True)
