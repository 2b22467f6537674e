"""
ingestion/coordinator.py

Claims, runs and cancels per-source ingestion.

A run moves through three phases:

1. ``claim`` creates a queued fetch run. The ledger refuses a second active
   run for the same source, which turns an overlapping trigger into a skip.
2. ``execute`` marks the run running, walks the connector's pages and upserts
   each record, recording every outcome and the page cursor as it goes.
3. The run is finalized completed, failed (page fetch or unexpected error) or
   cancelled (its token was signalled), which releases the claim.

Different sources can execute concurrently on different threads; the same
source never overlaps.
"""

from __future__ import annotations

import logging
import threading
import traceback
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from db.models.fetch_run import FetchRunStatus
from db.repositories.source_repository import SourceRepository
from ingestion.base import SourceConnector
from ingestion.cancellation import DEFAULT_CANCEL_REASON, CancellationToken
from ingestion.errors import ActiveRunExistsError, RunCancelledError, UnknownSourceError
from ingestion.ledger import FetchRunLedger, FetchRunRecord
from ingestion.logging_utils import log_event
from ingestion.pagination import PaginationWalker
from ingestion.resilience import ResilientCaller
from ingestion.upsert import EntityMapper, UpsertEngine

logger = logging.getLogger(__name__)

SHUTDOWN_CANCEL_REASON = "Ingestion cancelled because the scheduler is shutting down."
ERROR_MESSAGE_LIMIT = 2000


@dataclass
class SourceDefinition:
    """
    Everything the coordinator needs to ingest one source.
    """

    name: str
    connector: SourceConnector
    mapper: EntityMapper
    caller: ResilientCaller
    max_pages: int | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    page_delay_seconds: float = 0.1
    resume_from_cursor: bool = False


@dataclass(frozen=True)
class TriggerResult:
    source: str
    skipped: bool
    run: FetchRunRecord | None = None
    reason: str | None = None


class IngestionCoordinator:
    def __init__(
        self,
        *,
        ledger: FetchRunLedger,
        session_factory: Callable[[], Session],
        definitions: Iterable[SourceDefinition],
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory
        self._definitions = {definition.name: definition for definition in definitions}
        self._tokens: dict[uuid.UUID, CancellationToken] = {}
        self._run_sources: dict[uuid.UUID, str] = {}
        self._source_ids: dict[str, uuid.UUID] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def ledger(self) -> FetchRunLedger:
        return self._ledger

    @property
    def sources(self) -> list[str]:
        return sorted(self._definitions)

    def get_definition(self, source: str) -> SourceDefinition:
        definition = self._definitions.get(source)
        if definition is None:
            raise UnknownSourceError(
                f"Unknown ingestion source '{source}'. Registered: {self.sources}."
            )
        return definition

    def trigger_ingestion(self, source: str) -> TriggerResult:
        """
        Claim ``source`` and run it to a terminal state on the calling thread.
        """

        claimed = self.claim(source)
        if claimed.skipped or claimed.run is None:
            return claimed
        final = self.execute(claimed.run)
        return TriggerResult(source=source, skipped=False, run=final)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, reason: str = SHUTDOWN_CANCEL_REASON) -> int:
        """
        Refuse further claims and cancel every active run. Returns the number
        of runs cancelled.
        """

        with self._lock:
            self._closed = True
        return self.cancel_all(reason)

    def claim(self, source: str) -> TriggerResult:
        definition = self.get_definition(source)
        if self._closed:
            return self._refuse_claim(source)
        start_token = self._resume_token(definition)
        parameters = {
            **definition.connector.describe(),
            "filters": dict(definition.filters),
            "max_pages": definition.max_pages,
            "start_token": start_token,
        }

        try:
            run = self._ledger.create_run(source, parameters=parameters)
        except ActiveRunExistsError as exc:
            log_event(logger, logging.INFO, "fetch_run_skipped", source=source, reason=str(exc))
            return TriggerResult(source=source, skipped=True, reason=str(exc))

        # Registered under the same lock close() takes, so cancel_all always sees the run.
        with self._lock:
            closed = self._closed
            if not closed:
                self._tokens[run.id] = CancellationToken()
                self._run_sources[run.id] = source
        if closed:
            self._finalize(run, FetchRunStatus.CANCELLED, error_message=SHUTDOWN_CANCEL_REASON)
            return self._refuse_claim(source)

        log_event(logger, logging.INFO, "fetch_run_claimed", source=source, run_id=run.id)
        return TriggerResult(source=source, skipped=False, run=run)

    def execute(self, run: FetchRunRecord) -> FetchRunRecord:
        """
        Drive a claimed run to a terminal state. Never raises for pipeline
        failures; the outcome is on the returned record. Raises only when the
        terminal state cannot be written.
        """

        definition = self.get_definition(run.source)
        with self._lock:
            token = self._tokens.setdefault(run.id, CancellationToken())
            self._run_sources[run.id] = run.source
            closed = self._closed
        if closed:
            token.cancel(SHUTDOWN_CANCEL_REASON)

        try:
            final = self._execute(definition, run, token)
        finally:
            with self._lock:
                self._tokens.pop(run.id, None)
                self._run_sources.pop(run.id, None)

        log_event(
            logger,
            logging.INFO if final.status == FetchRunStatus.COMPLETED else logging.WARNING,
            "fetch_run_finalized",
            source=final.source,
            run_id=final.id,
            status=final.status,
            fetched=final.records_fetched,
            created=final.records_created,
            updated=final.records_updated,
            no_op=final.records_no_op,
            error=final.records_error,
            cursor=final.cursor,
            error_message=final.error_message,
        )
        return final

    def _execute(
        self,
        definition: SourceDefinition,
        run: FetchRunRecord,
        token: CancellationToken,
    ) -> FetchRunRecord:
        try:
            token.raise_if_cancelled()
            self._ledger.mark_running(run.id)
            self._run_pipeline(definition, run, token)
        except RunCancelledError as exc:
            return self._finalize(
                run,
                FetchRunStatus.CANCELLED,
                error_message=str(exc) or token.reason or DEFAULT_CANCEL_REASON,
            )
        except Exception as exc:
            logger.exception("Fetch run failed source=%s run_id=%s", run.source, run.id)
            return self._finalize(
                run,
                FetchRunStatus.FAILED,
                error_message=f"{type(exc).__name__}: {exc}"[:ERROR_MESSAGE_LIMIT],
                error_detail=traceback.format_exc(),
            )

        return self._finalize(run, FetchRunStatus.COMPLETED)

    def _finalize(
        self,
        run: FetchRunRecord,
        status: str,
        *,
        error_message: str | None = None,
        error_detail: str | None = None,
    ) -> FetchRunRecord:
        """
        Write the terminal state, retrying once. A second failure propagates and
        the run keeps its claim until ``fail_abandoned_runs`` releases it.
        """

        def write() -> FetchRunRecord:
            return self._ledger.finalize(
                run.id,
                status,
                error_message=error_message,
                error_detail=error_detail,
            )

        try:
            return write()
        except Exception:
            logger.warning(
                "Fetch run finalize failed, retrying source=%s run_id=%s status=%s",
                run.source,
                run.id,
                status,
                exc_info=True,
            )
        try:
            return write()
        except Exception:
            logger.exception(
                "Fetch run could not be finalized source=%s run_id=%s status=%s",
                run.source,
                run.id,
                status,
            )
            raise

    def _refuse_claim(self, source: str) -> TriggerResult:
        log_event(logger, logging.INFO, "fetch_run_skipped", source=source, reason=SHUTDOWN_CANCEL_REASON)
        return TriggerResult(source=source, skipped=True, reason=SHUTDOWN_CANCEL_REASON)

    def _run_pipeline(
        self,
        definition: SourceDefinition,
        run: FetchRunRecord,
        token: CancellationToken,
    ) -> None:
        start_token = (run.parameters or {}).get("start_token")
        walker = PaginationWalker(
            caller=definition.caller,
            page_delay_seconds=definition.page_delay_seconds,
        )

        with self._session_factory() as session:
            source_id = self._ensure_source_id(session, definition.name)
            engine = UpsertEngine(session, mapper=definition.mapper)

            for batch in walker.walk(
                definition.connector,
                cancel_token=token,
                start_token=start_token,
                filters=definition.filters,
                max_pages=definition.max_pages,
            ):
                token.raise_if_cancelled()
                page_counts = {"created": 0, "updated": 0, "no_op": 0, "error": 0}
                for raw in batch.records:
                    result = engine.upsert(source_id, raw)
                    self._ledger.record_outcome(run.id, result.outcome)
                    page_counts[result.outcome] += 1

                self._ledger.checkpoint(run.id, batch.page_token)
                log_event(
                    logger,
                    logging.INFO,
                    "fetch_run_page_processed",
                    source=definition.name,
                    run_id=run.id,
                    page=batch.page_number,
                    page_token=batch.page_token,
                    records=len(batch.records),
                    **page_counts,
                )

    def _ensure_source_id(self, session: Session, source: str) -> uuid.UUID:
        with self._lock:
            cached = self._source_ids.get(source)
        if cached is not None:
            return cached

        source_id = SourceRepository(session).get_or_create(source).id
        session.commit()
        with self._lock:
            self._source_ids[source] = source_id
        return source_id

    def _resume_token(self, definition: SourceDefinition) -> str | None:
        if not definition.resume_from_cursor:
            return None
        latest = self._ledger.get_latest(definition.name)
        if latest is None or latest.status not in (FetchRunStatus.FAILED, FetchRunStatus.CANCELLED):
            return None
        if latest.cursor is not None:
            logger.info(
                "Resuming source from stored cursor source=%s previous_run_id=%s cursor=%s",
                definition.name,
                latest.id,
                latest.cursor,
            )
        return latest.cursor

    def cancel_run(self, run_id: uuid.UUID, reason: str = DEFAULT_CANCEL_REASON) -> bool:
        with self._lock:
            token = self._tokens.get(run_id)
            source = self._run_sources.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        log_event(logger, logging.INFO, "fetch_run_cancel_requested", source=source, run_id=run_id, reason=reason)
        return True

    def cancel_source(self, source: str, reason: str = DEFAULT_CANCEL_REASON) -> bool:
        with self._lock:
            run_ids = [run_id for run_id, name in self._run_sources.items() if name == source]
        return any([self.cancel_run(run_id, reason) for run_id in run_ids])

    def cancel_all(self, reason: str = SHUTDOWN_CANCEL_REASON) -> int:
        with self._lock:
            run_ids = list(self._tokens)
        return sum(1 for run_id in run_ids if self.cancel_run(run_id, reason))

    def active_run_ids(self) -> list[uuid.UUID]:
        with self._lock:
            return list(self._tokens)

    def get_latest(self, source: str) -> FetchRunRecord | None:
        self.get_definition(source)
        return self._ledger.get_latest(source)

    def has_running(self, source: str) -> bool:
        self.get_definition(source)
        return self._ledger.has_running(source)

    def list_runs(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[FetchRunRecord]:
        return self._ledger.list_runs(source=source, status=status, limit=limit)
