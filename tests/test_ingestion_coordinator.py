"""
tests/test_ingestion_coordinator.py

End-to-end runs through IngestionCoordinator: claim, walk, upsert, ledger.

Coverage
--------
- created -> no_op -> updated across successive runs
- per-record errors complete the run with balanced counts
- a page failure fails the run and keeps the last processed cursor
- overlapping triggers for one source are skipped; different sources run in parallel
- cancellation before and during a run; closing refuses new claims
- a failed finalize is retried once, then propagates
- resume from the cursor of a failed run
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import func, select

from db.models.catalog_entity import CatalogEntity
from db.models.fetch_run import FetchRunStatus
from ingestion.coordinator import SHUTDOWN_CANCEL_REASON, IngestionCoordinator, SourceDefinition
from ingestion.errors import PermanentUpstreamError, TransientUpstreamError, UnknownSourceError
from ingestion.ledger import DatabaseFetchRunLedger
from tests.fakes import FakeConnector, FakeMapper, make_caller, make_record


def _pages(count: int, per_page: int = 2) -> list[list[dict]]:
    return [
        [make_record(page * per_page + offset + 1) for offset in range(per_page)]
        for page in range(count)
    ]


def _definition(connector: FakeConnector, **kwargs) -> SourceDefinition:
    return SourceDefinition(
        name=connector.source,
        connector=connector,
        mapper=FakeMapper(),
        caller=kwargs.pop("caller", None) or make_caller(connector.source),
        page_delay_seconds=0.0,
        **kwargs,
    )


def _coordinator(session_factory, *definitions: SourceDefinition) -> IngestionCoordinator:
    return IngestionCoordinator(
        ledger=DatabaseFetchRunLedger(session_factory),
        session_factory=session_factory,
        definitions=definitions,
    )


def _entity_count(session_factory) -> int:
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(CatalogEntity))


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


class TestRunOutcomes:
    def test_first_run_creates_then_rerun_is_no_op(self, session_factory) -> None:
        connector = FakeConnector(_pages(2))
        coordinator = _coordinator(session_factory, _definition(connector))

        first = coordinator.trigger_ingestion("fake")
        assert first.skipped is False
        assert first.run.status == FetchRunStatus.COMPLETED
        assert (first.run.records_fetched, first.run.records_created) == (4, 4)
        assert first.run.cursor == "1"
        assert first.run.completed_at is not None

        second = coordinator.trigger_ingestion("fake").run
        assert second.status == FetchRunStatus.COMPLETED
        assert (second.records_fetched, second.records_no_op, second.records_created) == (4, 4, 0)
        assert _entity_count(session_factory) == 4

    def test_changed_record_is_updated(self, session_factory) -> None:
        connector = FakeConnector(_pages(1))
        coordinator = _coordinator(session_factory, _definition(connector))
        coordinator.trigger_ingestion("fake")

        connector.pages[0][1] = make_record(2, name="Renamed")
        run = coordinator.trigger_ingestion("fake").run

        assert (run.records_updated, run.records_no_op) == (1, 1)
        assert run.counts_balanced

    def test_record_errors_do_not_fail_the_run(self, session_factory) -> None:
        pages = [[make_record(1), make_record(2, broken=True), {"name": "no identifier"}, make_record(3)]]
        coordinator = _coordinator(session_factory, _definition(FakeConnector(pages)))

        run = coordinator.trigger_ingestion("fake").run

        assert run.status == FetchRunStatus.COMPLETED
        assert (run.records_fetched, run.records_created, run.records_error) == (4, 2, 2)
        assert run.counts_balanced
        assert _entity_count(session_factory) == 2

    def test_run_parameters_are_recorded(self, session_factory) -> None:
        definition = _definition(FakeConnector(_pages(1)), max_pages=5, filters={"sort": "newest"})
        run = _coordinator(session_factory, definition).trigger_ingestion("fake").run

        assert run.parameters["source"] == "fake"
        assert run.parameters["max_pages"] == 5
        assert run.parameters["filters"] == {"sort": "newest"}
        assert run.parameters["start_token"] is None

    def test_transient_page_failure_is_retried(self, session_factory) -> None:
        connector = FakeConnector(_pages(1), failures={"0": [TransientUpstreamError("503")]})
        definition = _definition(connector, caller=make_caller(max_retries=2))

        run = _coordinator(session_factory, definition).trigger_ingestion("fake").run

        assert run.status == FetchRunStatus.COMPLETED
        assert connector.calls == ["0", "0"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_page_failure_fails_the_run_and_keeps_cursor(self, session_factory) -> None:
        connector = FakeConnector(_pages(3), failures={"1": [PermanentUpstreamError("HTTP 404")]})
        coordinator = _coordinator(session_factory, _definition(connector))

        run = coordinator.trigger_ingestion("fake").run

        assert run.status == FetchRunStatus.FAILED
        assert run.error_message.startswith("PageFetchError")
        assert "Traceback" in run.error_detail
        assert run.cursor == "0"
        assert (run.records_fetched, run.records_created) == (2, 2)
        assert run.counts_balanced
        assert coordinator.has_running("fake") is False

    def test_finalize_is_retried_once(self, session_factory, monkeypatch) -> None:
        coordinator = _coordinator(session_factory, _definition(FakeConnector(_pages(1))))
        ledger_finalize = coordinator.ledger.finalize
        attempts: list[str] = []

        def finalize_failing_once(run_id, status, **kwargs):
            attempts.append(status)
            if len(attempts) == 1:
                raise RuntimeError("database unavailable")
            return ledger_finalize(run_id, status, **kwargs)

        monkeypatch.setattr(coordinator.ledger, "finalize", finalize_failing_once)

        run = coordinator.trigger_ingestion("fake").run

        assert run.status == FetchRunStatus.COMPLETED
        assert attempts == [FetchRunStatus.COMPLETED, FetchRunStatus.COMPLETED]

    def test_unwritable_finalize_propagates_and_keeps_the_claim(self, session_factory, monkeypatch) -> None:
        coordinator = _coordinator(session_factory, _definition(FakeConnector(_pages(1))))

        def finalize_unavailable(run_id, status, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(coordinator.ledger, "finalize", finalize_unavailable)

        with pytest.raises(RuntimeError, match="database unavailable"):
            coordinator.trigger_ingestion("fake")

        assert coordinator.has_running("fake") is True
        assert coordinator.active_run_ids() == []

    def test_unknown_source(self, session_factory) -> None:
        coordinator = _coordinator(session_factory, _definition(FakeConnector([])))

        with pytest.raises(UnknownSourceError):
            coordinator.trigger_ingestion("missing")
        with pytest.raises(UnknownSourceError):
            coordinator.get_latest("missing")
        with pytest.raises(UnknownSourceError):
            coordinator.has_running("missing")


# ---------------------------------------------------------------------------
# No-overlap scheduling
# ---------------------------------------------------------------------------


class TestOverlap:
    def test_trigger_is_skipped_while_a_run_is_claimed(self, session_factory) -> None:
        connector = FakeConnector(_pages(1))
        coordinator = _coordinator(session_factory, _definition(connector))
        claimed = coordinator.claim("fake")

        skipped = coordinator.trigger_ingestion("fake")

        assert skipped.skipped is True
        assert skipped.run is None
        assert "active fetch run" in skipped.reason
        assert connector.calls == []

        final = coordinator.execute(claimed.run)
        assert final.status == FetchRunStatus.COMPLETED
        assert len(coordinator.list_runs(source="fake")) == 1

    def test_same_source_never_overlaps(self, session_factory) -> None:
        fetching = threading.Event()
        release = threading.Event()

        def block_first_page(page_token: str | None) -> None:
            fetching.set()
            release.wait(timeout=10)

        connector = FakeConnector(_pages(1), on_fetch=block_first_page)
        coordinator = _coordinator(session_factory, _definition(connector))
        results = []
        worker = threading.Thread(target=lambda: results.append(coordinator.trigger_ingestion("fake")))
        worker.start()

        try:
            assert fetching.wait(timeout=10)
            assert coordinator.has_running("fake") is True
            assert coordinator.trigger_ingestion("fake").skipped is True
        finally:
            release.set()
            worker.join(timeout=30)

        assert results[0].run.status == FetchRunStatus.COMPLETED
        assert connector.calls == ["0"]

    def test_different_sources_run_in_parallel(self, session_factory) -> None:
        both_fetching = threading.Barrier(2)

        def wait_for_other_source(page_token: str | None) -> None:
            both_fetching.wait(timeout=10)

        first = FakeConnector(_pages(1), source="alpha", on_fetch=wait_for_other_source)
        second = FakeConnector(_pages(1), source="beta", on_fetch=wait_for_other_source)
        coordinator = _coordinator(session_factory, _definition(first), _definition(second))

        results = {}
        threads = [
            threading.Thread(target=lambda name=name: results.update({name: coordinator.trigger_ingestion(name)}))
            for name in ("alpha", "beta")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert results["alpha"].run.status == FetchRunStatus.COMPLETED
        assert results["beta"].run.status == FetchRunStatus.COMPLETED
        assert _entity_count(session_factory) == 4


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_before_execute(self, session_factory) -> None:
        connector = FakeConnector(_pages(2))
        coordinator = _coordinator(session_factory, _definition(connector))
        claimed = coordinator.claim("fake")

        assert coordinator.cancel_run(claimed.run.id, "operator request") is True
        final = coordinator.execute(claimed.run)

        assert final.status == FetchRunStatus.CANCELLED
        assert final.error_message == "operator request"
        assert final.records_fetched == 0
        assert connector.calls == []

    def test_cancel_mid_run_keeps_processed_pages(self, session_factory) -> None:
        coordinator: IngestionCoordinator | None = None

        def cancel_on_second_page(page_token: str | None) -> None:
            if page_token == "1":
                coordinator.cancel_source("fake", "stop requested")

        connector = FakeConnector(_pages(3), on_fetch=cancel_on_second_page)
        coordinator = _coordinator(session_factory, _definition(connector))

        run = coordinator.trigger_ingestion("fake").run

        assert run.status == FetchRunStatus.CANCELLED
        assert run.error_message == "stop requested"
        assert run.cursor == "0"
        assert (run.records_fetched, run.records_created) == (2, 2)
        assert connector.calls == ["0", "1"]
        assert coordinator.has_running("fake") is False

    def test_cancel_all_uses_shutdown_reason(self, session_factory) -> None:
        coordinator = _coordinator(
            session_factory,
            _definition(FakeConnector(_pages(1), source="alpha")),
            _definition(FakeConnector(_pages(1), source="beta")),
        )
        alpha = coordinator.claim("alpha").run
        beta = coordinator.claim("beta").run

        assert coordinator.cancel_all() == 2
        assert coordinator.execute(alpha).error_message == SHUTDOWN_CANCEL_REASON
        assert coordinator.execute(beta).status == FetchRunStatus.CANCELLED
        assert coordinator.active_run_ids() == []

    def test_close_refuses_new_claims(self, session_factory) -> None:
        coordinator = _coordinator(
            session_factory,
            _definition(FakeConnector(_pages(1), source="alpha")),
            _definition(FakeConnector(_pages(1), source="beta")),
        )
        alpha = coordinator.claim("alpha").run

        assert coordinator.close() == 1
        refused = coordinator.trigger_ingestion("beta")

        assert refused.skipped is True
        assert refused.reason == SHUTDOWN_CANCEL_REASON
        assert coordinator.get_latest("beta") is None
        assert coordinator.execute(alpha).status == FetchRunStatus.CANCELLED

    def test_claim_racing_close_is_cancelled(self, session_factory, monkeypatch) -> None:
        coordinator = _coordinator(session_factory, _definition(FakeConnector(_pages(1))))
        ledger_create_run = coordinator.ledger.create_run

        def create_run_then_close(source, **kwargs):
            run = ledger_create_run(source, **kwargs)
            coordinator.close()
            return run

        monkeypatch.setattr(coordinator.ledger, "create_run", create_run_then_close)

        result = coordinator.claim("fake")

        assert result.skipped is True
        assert result.reason == SHUTDOWN_CANCEL_REASON
        latest = coordinator.get_latest("fake")
        assert latest.status == FetchRunStatus.CANCELLED
        assert latest.error_message == SHUTDOWN_CANCEL_REASON
        assert coordinator.has_running("fake") is False
        assert coordinator.active_run_ids() == []


    def test_cancel_unknown_run_is_false(self, session_factory) -> None:
        coordinator = _coordinator(session_factory, _definition(FakeConnector([])))
        assert coordinator.cancel_source("fake") is False


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


class TestResume:
    def test_failed_run_resumes_from_its_cursor(self, session_factory) -> None:
        connector = FakeConnector(_pages(2), failures={"1": [PermanentUpstreamError("HTTP 404")]})
        coordinator = _coordinator(session_factory, _definition(connector, resume_from_cursor=True))

        failed = coordinator.trigger_ingestion("fake").run
        assert failed.status == FetchRunStatus.FAILED

        resumed = coordinator.trigger_ingestion("fake").run

        assert resumed.parameters["start_token"] == "0"
        assert resumed.status == FetchRunStatus.COMPLETED
        assert (resumed.records_no_op, resumed.records_created) == (2, 2)
        assert connector.calls == ["0", "1", "0", "1"]

    def test_completed_run_starts_from_the_beginning(self, session_factory) -> None:
        connector = FakeConnector(_pages(1))
        coordinator = _coordinator(session_factory, _definition(connector, resume_from_cursor=True))
        coordinator.trigger_ingestion("fake")

        run = coordinator.trigger_ingestion("fake").run

        assert run.parameters["start_token"] is None
        assert connector.calls == ["0", "0"]
