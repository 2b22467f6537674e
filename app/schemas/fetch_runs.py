"""
Schemas for fetch run history, trigger and cancel endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from ingestion.ledger import FetchRunRecord


class FetchRunCounts(BaseModel):
    fetched: int = 0
    created: int = 0
    updated: int = 0
    no_op: int = 0
    error: int = 0


class FetchRunResponse(BaseModel):
    run_id: UUID
    source: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    counts: FetchRunCounts
    cursor: str | None = None
    parameters: dict[str, Any] | None = None
    error_message: str | None = None
    error_detail: str | None = None

    @classmethod
    def from_record(cls, record: FetchRunRecord) -> FetchRunResponse:
        return cls(
            run_id=record.id,
            source=record.source,
            status=record.status,
            started_at=record.started_at,
            completed_at=record.completed_at,
            counts=FetchRunCounts(
                fetched=record.records_fetched,
                created=record.records_created,
                updated=record.records_updated,
                no_op=record.records_no_op,
                error=record.records_error,
            ),
            cursor=record.cursor,
            parameters=record.parameters,
            error_message=record.error_message,
            error_detail=record.error_detail,
        )


class FetchRunListResponse(BaseModel):
    runs: list[FetchRunResponse] = Field(default_factory=list)


class FetchRunAcceptedResponse(BaseModel):
    run_id: UUID
    source: str
    status: str
    started_at: datetime


class SourceRunningResponse(BaseModel):
    source: str
    running: bool


class CancelResponse(BaseModel):
    cancelled: bool
    source: str | None = None
    run_id: UUID | None = None


class SourceListResponse(BaseModel):
    sources: list[str] = Field(default_factory=list)
