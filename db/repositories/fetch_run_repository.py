"""
Repository for fetch run persistence, counters and status lookup.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from db.models.fetch_run import FetchRun, FetchRunStatus
from db.models.source import Source

_COUNTER_COLUMNS = {
    "created": "records_created",
    "updated": "records_updated",
    "no_op": "records_no_op",
    "error": "records_error",
}


class FetchRunRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_run(
        self,
        *,
        source_id: uuid.UUID,
        started_at: datetime,
        parameters: dict[str, Any] | None = None,
    ) -> FetchRun:
        """
        Insert a queued run. Raises ``IntegrityError`` on flush when the source
        already has a queued or running run.
        """

        run = FetchRun(
            source_id=source_id,
            status=FetchRunStatus.QUEUED,
            started_at=started_at,
            parameters=parameters,
        )
        self._session.add(run)
        self._session.flush()
        self._session.refresh(run)
        return run

    def get_run(self, run_id: uuid.UUID) -> FetchRun | None:
        return self._session.get(FetchRun, run_id)

    def get_run_for_update(self, run_id: uuid.UUID) -> FetchRun | None:
        stmt = select(FetchRun).where(FetchRun.id == run_id).with_for_update()
        return self._session.scalars(stmt).first()

    def get_latest(self, *, source_id: uuid.UUID) -> FetchRun | None:
        stmt = (
            select(FetchRun)
            .where(FetchRun.source_id == source_id)
            .order_by(FetchRun.started_at.desc(), FetchRun.created_at.desc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def has_active(self, *, source_id: uuid.UUID) -> bool:
        stmt = (
            select(FetchRun.id)
            .where(
                FetchRun.source_id == source_id,
                FetchRun.status.in_(FetchRunStatus.ACTIVE),
            )
            .limit(1)
        )
        return self._session.scalars(stmt).first() is not None

    def list_runs(
        self,
        *,
        limit: int = 50,
        source_name: str | None = None,
        status: str | None = None,
    ) -> list[FetchRun]:
        stmt: Select[tuple[FetchRun]] = select(FetchRun)

        if source_name:
            stmt = stmt.join(Source, Source.id == FetchRun.source_id).where(Source.name == source_name)
        if status:
            stmt = stmt.where(FetchRun.status == status)

        stmt = stmt.order_by(FetchRun.started_at.desc(), FetchRun.created_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).unique().all())

    def list_active_started_before(self, cutoff: datetime) -> list[FetchRun]:
        stmt = select(FetchRun).where(
            FetchRun.status.in_(FetchRunStatus.ACTIVE),
            FetchRun.started_at < cutoff,
        )
        return list(self._session.scalars(stmt).unique().all())

    def increment_outcome(self, *, run_id: uuid.UUID, outcome: str) -> int:
        """
        Add one to ``records_fetched`` and to the counter of ``outcome`` in a
        single UPDATE. Returns the number of rows touched (0 when the run is
        not running).
        """

        column_name = _COUNTER_COLUMNS.get(outcome)
        if column_name is None:
            raise ValueError(f"Unknown upsert outcome '{outcome}'.")

        column = getattr(FetchRun, column_name)
        stmt = (
            update(FetchRun)
            .where(FetchRun.id == run_id, FetchRun.status == FetchRunStatus.RUNNING)
            .values(
                {
                    FetchRun.records_fetched: FetchRun.records_fetched + 1,
                    column: column + 1,
                }
            )
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(stmt)
        return result.rowcount

    def mark_running(self, *, run: FetchRun) -> FetchRun:
        run.status = FetchRunStatus.RUNNING
        run.completed_at = None
        run.error_message = None
        run.error_detail = None
        return run

    def set_cursor(self, *, run: FetchRun, cursor: str | None) -> FetchRun:
        run.cursor = cursor
        return run

    def mark_finished(
        self,
        *,
        run: FetchRun,
        status: str,
        completed_at: datetime,
        error_message: str | None = None,
        error_detail: str | None = None,
    ) -> FetchRun:
        run.status = status
        run.completed_at = completed_at
        run.error_message = error_message
        run.error_detail = error_detail
        return run
