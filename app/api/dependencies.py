"""
app/api/dependencies.py

Shared FastAPI dependencies.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.scheduler.jobs import IngestionScheduler


def get_ingestion_scheduler(request: Request) -> IngestionScheduler:
    """
    Return the scheduler started by the application lifespan.
    """

    scheduler = getattr(request.app.state, "ingestion_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ingestion scheduler is not running.",
        )
    return scheduler
