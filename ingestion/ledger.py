"""
ingestion/ledger.py

Fetch run ledger: the auditable history of ingestion attempts.

Two interchangeable backends implement ``FetchRunLedger``:

- ``DatabaseFetchRunLedger`` persists runs in the ``fetch_runs`` table. The
  no-overlap claim is the partial unique index on active runs.
- ``JsonFileFetchRunLedger`` keeps runs in one JSON document. The claim is a
  compare-and-append under a process-wide lock.

State machine::

    queued -> running -> completed | failed | cancelled
    queued -> failed | cancelled

Terminal runs never change again.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.base import as_utc
from db.models.fetch_run import FetchRun, FetchRunStatus
from db.repositories.fetch_run_repository import FetchRunRepository
from db.repositories.source_repository import SourceRepository
from ingestion.errors import (
    ActiveRunExistsError,
    InvalidRunTransitionError,
    RunNotFoundError,
)
from ingestion.upsert import UpsertOutcome

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    FetchRunStatus.QUEUED: frozenset(
        {FetchRunStatus.RUNNING, FetchRunStatus.FAILED, FetchRunStatus.CANCELLED}
    ),
    FetchRunStatus.RUNNING: frozenset(
        {FetchRunStatus.COMPLETED, FetchRunStatus.FAILED, FetchRunStatus.CANCELLED}
    ),
    FetchRunStatus.COMPLETED: frozenset(),
    FetchRunStatus.FAILED: frozenset(),
    FetchRunStatus.CANCELLED: frozenset(),
}

ABANDONED_RUN_MESSAGE = "Run abandoned: no progress before the process stopped."

_OUTCOME_FIELDS = {
    UpsertOutcome.CREATED: "records_created",
    UpsertOutcome.UPDATED: "records_updated",
    UpsertOutcome.NO_OP: "records_no_op",
    UpsertOutcome.ERROR: "records_error",
}


def ensure_transition(run_id: uuid.UUID, current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidRunTransitionError(
            f"Fetch run {run_id} cannot move from '{current}' to '{target}'."
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FetchRunRecord:
    """
    Backend-neutral snapshot of one fetch run.
    """

    id: uuid.UUID
    source: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    records_fetched: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_no_op: int = 0
    records_error: int = 0
    cursor: str | None = None
    parameters: dict[str, Any] | None = field(default=None)
    error_message: str | None = None
    error_detail: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in FetchRunStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in FetchRunStatus.TERMINAL

    @property
    def counts_balanced(self) -> bool:
        return (
            self.records_created + self.records_updated + self.records_no_op + self.records_error
            == self.records_fetched
        )

    @classmethod
    def from_model(cls, run: FetchRun, source_name: str) -> FetchRunRecord:
        return cls(
            id=run.id,
            source=source_name,
            status=run.status,
            started_at=as_utc(run.started_at),
            completed_at=as_utc(run.completed_at),
            records_fetched=run.records_fetched,
            records_created=run.records_created,
            records_updated=run.records_updated,
            records_no_op=run.records_no_op,
            records_error=run.records_error,
            cursor=run.cursor,
            parameters=run.parameters,
            error_message=run.error_message,
            error_detail=run.error_detail,
        )

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["id"] = str(self.id)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> FetchRunRecord:
        values = dict(data)
        values["id"] = uuid.UUID(values["id"])
        values["started_at"] = as_utc(datetime.fromisoformat(values["started_at"]))
        completed_at = values.get("completed_at")
        values["completed_at"] = as_utc(datetime.fromisoformat(completed_at)) if completed_at else None
        return cls(**values)


class FetchRunLedger(Protocol):
    """
    Persistence contract for fetch runs, shared by both backends.
    """

    def create_run(self, source: str, *, parameters: dict[str, Any] | None = None) -> FetchRunRecord:
        """
        Claim ``source`` by creating a queued run. Raises ``ActiveRunExistsError``
        when another queued or running run holds the claim.
        """
        ...

    def mark_running(self, run_id: uuid.UUID) -> FetchRunRecord:
        ...

    def record_outcome(self, run_id: uuid.UUID, outcome: str) -> None:
        ...

    def checkpoint(self, run_id: uuid.UUID, cursor: str | None) -> None:
        ...

    def finalize(
        self,
        run_id: uuid.UUID,
        status: str,
        *,
        error_message: str | None = None,
        error_detail: str | None = None,
    ) -> FetchRunRecord:
        ...

    def get_run(self, run_id: uuid.UUID) -> FetchRunRecord | None:
        ...

    def get_latest(self, source: str) -> FetchRunRecord | None:
        ...

    def has_running(self, source: str) -> bool:
        ...

    def list_runs(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[FetchRunRecord]:
        ...

    def fail_abandoned_runs(self, *, older_than: timedelta) -> list[FetchRunRecord]:
        ...


class DatabaseFetchRunLedger:
    """
    SQLAlchemy-backed ledger. Every operation runs in its own short session so
    progress is visible to other readers as soon as it is recorded.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._source_ids: dict[str, uuid.UUID] = {}
        self._source_names: dict[uuid.UUID, str] = {}
        self._lock = threading.Lock()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ensure_source(self, source: str) -> uuid.UUID:
        with self._lock:
            cached = self._source_ids.get(source)
        if cached is not None:
            return cached

        with self._session_scope() as session:
            source_row = SourceRepository(session).get_or_create(source)
            source_id = source_row.id

        with self._lock:
            self._source_ids[source] = source_id
            self._source_names[source_id] = source
        return source_id

    def _lookup_source_id(self, source: str) -> uuid.UUID | None:
        with self._lock:
            cached = self._source_ids.get(source)
        if cached is not None:
            return cached
        with self._session_scope() as session:
            source_row = SourceRepository(session).get_by_name(source)
            if source_row is None:
                return None
            source_id = source_row.id
        with self._lock:
            self._source_ids[source] = source_id
            self._source_names[source_id] = source
        return source_id

    def _to_record(self, run: FetchRun) -> FetchRunRecord:
        with self._lock:
            source_name = self._source_names.get(run.source_id)
        if source_name is None:
            source_name = run.source.name
        return FetchRunRecord.from_model(run, source_name)

    def _require_run(self, repo: FetchRunRepository, run_id: uuid.UUID) -> FetchRun:
        run = repo.get_run_for_update(run_id)
        if run is None:
            raise RunNotFoundError(f"Fetch run {run_id} does not exist.")
        return run

    def create_run(self, source: str, *, parameters: dict[str, Any] | None = None) -> FetchRunRecord:
        source_id = self.ensure_source(source)
        try:
            with self._session_scope() as session:
                run = FetchRunRepository(session).create_run(
                    source_id=source_id,
                    started_at=_utcnow(),
                    parameters=parameters,
                )
                record = self._to_record(run)
        except IntegrityError as exc:
            raise ActiveRunExistsError(source) from exc

        logger.info("Fetch run claimed source=%s run_id=%s", source, record.id)
        return record

    def mark_running(self, run_id: uuid.UUID) -> FetchRunRecord:
        with self._session_scope() as session:
            repo = FetchRunRepository(session)
            run = self._require_run(repo, run_id)
            ensure_transition(run_id, run.status, FetchRunStatus.RUNNING)
            repo.mark_running(run=run)
            session.flush()
            return self._to_record(run)

    def record_outcome(self, run_id: uuid.UUID, outcome: str) -> None:
        with self._session_scope() as session:
            repo = FetchRunRepository(session)
            updated = repo.increment_outcome(run_id=run_id, outcome=outcome)
            if updated == 0:
                run = repo.get_run(run_id)
                if run is None:
                    raise RunNotFoundError(f"Fetch run {run_id} does not exist.")
                raise InvalidRunTransitionError(
                    f"Fetch run {run_id} is '{run.status}'; counts can only change while running."
                )

    def checkpoint(self, run_id: uuid.UUID, cursor: str | None) -> None:
        with self._session_scope() as session:
            repo = FetchRunRepository(session)
            run = self._require_run(repo, run_id)
            if run.status != FetchRunStatus.RUNNING:
                raise InvalidRunTransitionError(
                    f"Fetch run {run_id} is '{run.status}'; the cursor can only move while running."
                )
            repo.set_cursor(run=run, cursor=cursor)

    def finalize(
        self,
        run_id: uuid.UUID,
        status: str,
        *,
        error_message: str | None = None,
        error_detail: str | None = None,
    ) -> FetchRunRecord:
        with self._session_scope() as session:
            repo = FetchRunRepository(session)
            run = self._require_run(repo, run_id)
            ensure_transition(run_id, run.status, status)
            repo.mark_finished(
                run=run,
                status=status,
                completed_at=_utcnow(),
                error_message=error_message,
                error_detail=error_detail,
            )
            session.flush()
            return self._to_record(run)

    def get_run(self, run_id: uuid.UUID) -> FetchRunRecord | None:
        with self._session_scope() as session:
            run = FetchRunRepository(session).get_run(run_id)
            return self._to_record(run) if run is not None else None

    def get_latest(self, source: str) -> FetchRunRecord | None:
        source_id = self._lookup_source_id(source)
        if source_id is None:
            return None
        with self._session_scope() as session:
            run = FetchRunRepository(session).get_latest(source_id=source_id)
            return self._to_record(run) if run is not None else None

    def has_running(self, source: str) -> bool:
        source_id = self._lookup_source_id(source)
        if source_id is None:
            return False
        with self._session_scope() as session:
            return FetchRunRepository(session).has_active(source_id=source_id)

    def list_runs(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[FetchRunRecord]:
        with self._session_scope() as session:
            runs = FetchRunRepository(session).list_runs(limit=limit, source_name=source, status=status)
            return [self._to_record(run) for run in runs]

    def fail_abandoned_runs(self, *, older_than: timedelta) -> list[FetchRunRecord]:
        cutoff = _utcnow() - older_than
        failed: list[FetchRunRecord] = []
        with self._session_scope() as session:
            repo = FetchRunRepository(session)
            for run in repo.list_active_started_before(cutoff):
                repo.mark_finished(
                    run=run,
                    status=FetchRunStatus.FAILED,
                    completed_at=_utcnow(),
                    error_message=ABANDONED_RUN_MESSAGE,
                )
                failed.append(self._to_record(run))

        for record in failed:
            logger.warning(
                "Abandoned fetch run failed source=%s run_id=%s started_at=%s",
                record.source,
                record.id,
                record.started_at.isoformat(),
            )
        return failed


class JsonFileFetchRunLedger:
    """
    Ledger persisted as a single JSON document.

    Suitable for one process: the claim is enforced by an in-process lock and
    every mutation rewrites the file atomically (temp file, then replace).
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()
        self._runs: dict[uuid.UUID, FetchRunRecord] = self._load()

    def _load(self) -> dict[uuid.UUID, FetchRunRecord]:
        if not self._path.exists():
            return {}
        raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        runs = [FetchRunRecord.from_json(item) for item in raw.get("runs", [])]
        return {run.id: run for run in runs}

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        document = {"runs": [run.to_json() for run in self._runs.values()]}
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True)
        tmp_path.replace(self._path)

    def _require_run(self, run_id: uuid.UUID) -> FetchRunRecord:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Fetch run {run_id} does not exist.")
        return run

    def create_run(self, source: str, *, parameters: dict[str, Any] | None = None) -> FetchRunRecord:
        with self._lock:
            if any(run.source == source and run.is_active for run in self._runs.values()):
                raise ActiveRunExistsError(source)
            record = FetchRunRecord(
                id=uuid.uuid4(),
                source=source,
                status=FetchRunStatus.QUEUED,
                started_at=_utcnow(),
                parameters=dict(parameters) if parameters is not None else None,
            )
            self._runs[record.id] = record
            self._persist()

        logger.info("Fetch run claimed source=%s run_id=%s", source, record.id)
        return replace(record)

    def mark_running(self, run_id: uuid.UUID) -> FetchRunRecord:
        with self._lock:
            run = self._require_run(run_id)
            ensure_transition(run_id, run.status, FetchRunStatus.RUNNING)
            run.status = FetchRunStatus.RUNNING
            self._persist()
            return replace(run)

    def record_outcome(self, run_id: uuid.UUID, outcome: str) -> None:
        field_name = _OUTCOME_FIELDS.get(outcome)
        if field_name is None:
            raise ValueError(f"Unknown upsert outcome '{outcome}'.")
        with self._lock:
            run = self._require_run(run_id)
            if run.status != FetchRunStatus.RUNNING:
                raise InvalidRunTransitionError(
                    f"Fetch run {run_id} is '{run.status}'; counts can only change while running."
                )
            run.records_fetched += 1
            setattr(run, field_name, getattr(run, field_name) + 1)
            self._persist()

    def checkpoint(self, run_id: uuid.UUID, cursor: str | None) -> None:
        with self._lock:
            run = self._require_run(run_id)
            if run.status != FetchRunStatus.RUNNING:
                raise InvalidRunTransitionError(
                    f"Fetch run {run_id} is '{run.status}'; the cursor can only move while running."
                )
            run.cursor = cursor
            self._persist()

    def finalize(
        self,
        run_id: uuid.UUID,
        status: str,
        *,
        error_message: str | None = None,
        error_detail: str | None = None,
    ) -> FetchRunRecord:
        with self._lock:
            run = self._require_run(run_id)
            ensure_transition(run_id, run.status, status)
            run.status = status
            run.completed_at = _utcnow()
            run.error_message = error_message
            run.error_detail = error_detail
            self._persist()
            return replace(run)

    def get_run(self, run_id: uuid.UUID) -> FetchRunRecord | None:
        with self._lock:
            run = self._runs.get(run_id)
            return replace(run) if run is not None else None

    def _sorted_runs(self) -> list[FetchRunRecord]:
        return sorted(self._runs.values(), key=lambda run: run.started_at, reverse=True)

    def get_latest(self, source: str) -> FetchRunRecord | None:
        with self._lock:
            for run in self._sorted_runs():
                if run.source == source:
                    return replace(run)
        return None

    def has_running(self, source: str) -> bool:
        with self._lock:
            return any(run.source == source and run.is_active for run in self._runs.values())

    def list_runs(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[FetchRunRecord]:
        with self._lock:
            runs = [
                replace(run)
                for run in self._sorted_runs()
                if (source is None or run.source == source) and (status is None or run.status == status)
            ]
        return runs[: max(1, limit)]

    def fail_abandoned_runs(self, *, older_than: timedelta) -> list[FetchRunRecord]:
        cutoff = _utcnow() - older_than
        failed: list[FetchRunRecord] = []
        with self._lock:
            for run in self._runs.values():
                if run.is_active and run.started_at < cutoff:
                    run.status = FetchRunStatus.FAILED
                    run.completed_at = _utcnow()
                    run.error_message = ABANDONED_RUN_MESSAGE
                    failed.append(replace(run))
            if failed:
                self._persist()

        for record in failed:
            logger.warning(
                "Abandoned fetch run failed source=%s run_id=%s started_at=%s",
                record.source,
                record.id,
                record.started_at.isoformat(),
            )
        return failed
