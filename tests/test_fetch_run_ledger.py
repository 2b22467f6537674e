"""
tests/test_fetch_run_ledger.py

Both FetchRunLedger backends must behave identically: the claim, the state
machine, count closure, cursor checkpoints, queries and abandoned-run recovery.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

import ingestion.ledger as ledger_module
from db.models.fetch_run import FetchRunStatus
from db.models.source import Source
from ingestion.errors import ActiveRunExistsError, InvalidRunTransitionError, RunNotFoundError
from ingestion.ledger import (
    ABANDONED_RUN_MESSAGE,
    DatabaseFetchRunLedger,
    FetchRunRecord,
    JsonFileFetchRunLedger,
    ensure_transition,
)
from ingestion.upsert import UpsertOutcome


@pytest.fixture(params=["database", "json"])
def ledger(request, session_factory, tmp_path):
    if request.param == "database":
        return DatabaseFetchRunLedger(session_factory)
    return JsonFileFetchRunLedger(tmp_path / "ledger" / "fetch_runs.json")


def _running(ledger, source: str = "civitai") -> FetchRunRecord:
    run = ledger.create_run(source)
    return ledger.mark_running(run.id)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (FetchRunStatus.QUEUED, FetchRunStatus.RUNNING),
            (FetchRunStatus.QUEUED, FetchRunStatus.FAILED),
            (FetchRunStatus.QUEUED, FetchRunStatus.CANCELLED),
            (FetchRunStatus.RUNNING, FetchRunStatus.COMPLETED),
            (FetchRunStatus.RUNNING, FetchRunStatus.FAILED),
            (FetchRunStatus.RUNNING, FetchRunStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current: str, target: str) -> None:
        ensure_transition(uuid.uuid4(), current, target)

    @pytest.mark.parametrize(
        "current, target",
        [
            (FetchRunStatus.QUEUED, FetchRunStatus.COMPLETED),
            (FetchRunStatus.RUNNING, FetchRunStatus.QUEUED),
            (FetchRunStatus.COMPLETED, FetchRunStatus.RUNNING),
            (FetchRunStatus.FAILED, FetchRunStatus.COMPLETED),
            (FetchRunStatus.CANCELLED, FetchRunStatus.FAILED),
        ],
    )
    def test_rejected(self, current: str, target: str) -> None:
        with pytest.raises(InvalidRunTransitionError):
            ensure_transition(uuid.uuid4(), current, target)


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------


class TestClaim:
    def test_create_run_is_queued(self, ledger) -> None:
        run = ledger.create_run("civitai", parameters={"page_size": 100})

        assert run.status == FetchRunStatus.QUEUED
        assert run.source == "civitai"
        assert run.parameters == {"page_size": 100}
        assert run.started_at.tzinfo is not None
        assert run.completed_at is None
        assert run.records_fetched == 0

    def test_second_active_run_is_rejected(self, ledger) -> None:
        ledger.create_run("civitai")
        with pytest.raises(ActiveRunExistsError):
            ledger.create_run("civitai")

    def test_running_run_also_holds_the_claim(self, ledger) -> None:
        _running(ledger)
        with pytest.raises(ActiveRunExistsError):
            ledger.create_run("civitai")

    def test_other_source_can_be_claimed(self, ledger) -> None:
        ledger.create_run("civitai")
        assert ledger.create_run("danbooru").status == FetchRunStatus.QUEUED

    def test_terminal_run_releases_the_claim(self, ledger) -> None:
        run = _running(ledger)
        ledger.finalize(run.id, FetchRunStatus.COMPLETED)
        assert ledger.create_run("civitai").status == FetchRunStatus.QUEUED

    def test_concurrent_claims_admit_exactly_one(self, ledger) -> None:
        barrier = threading.Barrier(6)
        outcomes: list[str] = []
        lock = threading.Lock()

        def claim() -> None:
            barrier.wait(timeout=5)
            try:
                ledger.create_run("civitai")
                result = "claimed"
            except ActiveRunExistsError:
                result = "skipped"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=claim) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["claimed"] + ["skipped"] * 5
        assert len(ledger.list_runs(source="civitai")) == 1


# ---------------------------------------------------------------------------
# Progress and finalization
# ---------------------------------------------------------------------------


class TestProgress:
    def test_mark_running(self, ledger) -> None:
        run = ledger.create_run("civitai")
        assert ledger.mark_running(run.id).status == FetchRunStatus.RUNNING

    def test_record_outcome_keeps_counts_closed(self, ledger) -> None:
        run = _running(ledger)
        outcomes = [
            UpsertOutcome.CREATED,
            UpsertOutcome.CREATED,
            UpsertOutcome.UPDATED,
            UpsertOutcome.NO_OP,
            UpsertOutcome.ERROR,
        ]
        for outcome in outcomes:
            ledger.record_outcome(run.id, outcome)

        final = ledger.finalize(run.id, FetchRunStatus.COMPLETED)
        assert final.records_fetched == 5
        assert (final.records_created, final.records_updated, final.records_no_op, final.records_error) == (
            2,
            1,
            1,
            1,
        )
        assert final.counts_balanced

    def test_record_outcome_requires_running(self, ledger) -> None:
        run = ledger.create_run("civitai")
        with pytest.raises(InvalidRunTransitionError):
            ledger.record_outcome(run.id, UpsertOutcome.CREATED)

    def test_unknown_outcome_is_rejected(self, ledger) -> None:
        run = _running(ledger)
        with pytest.raises(ValueError):
            ledger.record_outcome(run.id, "skipped")

    def test_checkpoint_stores_cursor(self, ledger) -> None:
        run = _running(ledger)
        ledger.checkpoint(run.id, "3")
        assert ledger.get_run(run.id).cursor == "3"

    def test_checkpoint_requires_running(self, ledger) -> None:
        run = ledger.create_run("civitai")
        with pytest.raises(InvalidRunTransitionError):
            ledger.checkpoint(run.id, "1")

    def test_finalize_failed_keeps_error_details(self, ledger) -> None:
        run = _running(ledger)
        final = ledger.finalize(
            run.id,
            FetchRunStatus.FAILED,
            error_message="PageFetchError: boom",
            error_detail="Traceback ...",
        )

        assert final.status == FetchRunStatus.FAILED
        assert final.completed_at is not None
        assert final.error_message == "PageFetchError: boom"
        assert final.error_detail == "Traceback ..."

    def test_queued_run_can_be_cancelled(self, ledger) -> None:
        run = ledger.create_run("civitai")
        final = ledger.finalize(run.id, FetchRunStatus.CANCELLED, error_message="cancelled before start")
        assert final.status == FetchRunStatus.CANCELLED

    def test_terminal_run_never_changes(self, ledger) -> None:
        run = _running(ledger)
        ledger.finalize(run.id, FetchRunStatus.COMPLETED)

        with pytest.raises(InvalidRunTransitionError):
            ledger.finalize(run.id, FetchRunStatus.FAILED)
        with pytest.raises(InvalidRunTransitionError):
            ledger.mark_running(run.id)
        with pytest.raises(InvalidRunTransitionError):
            ledger.record_outcome(run.id, UpsertOutcome.CREATED)
        assert ledger.get_run(run.id).status == FetchRunStatus.COMPLETED

    def test_unknown_run(self, ledger) -> None:
        missing = uuid.uuid4()
        assert ledger.get_run(missing) is None
        with pytest.raises(RunNotFoundError):
            ledger.mark_running(missing)
        with pytest.raises(RunNotFoundError):
            ledger.finalize(missing, FetchRunStatus.FAILED)
        with pytest.raises(RunNotFoundError):
            ledger.record_outcome(missing, UpsertOutcome.CREATED)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_get_latest_and_has_running(self, ledger) -> None:
        assert ledger.get_latest("civitai") is None
        assert ledger.has_running("civitai") is False

        first = _running(ledger)
        assert ledger.has_running("civitai") is True
        ledger.finalize(first.id, FetchRunStatus.COMPLETED)
        assert ledger.has_running("civitai") is False

        second = ledger.create_run("civitai")
        assert ledger.get_latest("civitai").id == second.id
        assert ledger.has_running("civitai") is True

    def test_list_runs_filters_and_limits(self, ledger) -> None:
        for _ in range(3):
            run = _running(ledger, "civitai")
            ledger.finalize(run.id, FetchRunStatus.COMPLETED)
        failed = _running(ledger, "danbooru")
        ledger.finalize(failed.id, FetchRunStatus.FAILED, error_message="boom")

        assert len(ledger.list_runs()) == 4
        assert len(ledger.list_runs(source="civitai")) == 3
        assert [run.id for run in ledger.list_runs(status=FetchRunStatus.FAILED)] == [failed.id]
        assert len(ledger.list_runs(source="civitai", limit=2)) == 2
        assert ledger.list_runs()[0].id == failed.id


# ---------------------------------------------------------------------------
# Abandoned runs
# ---------------------------------------------------------------------------


class TestAbandonedRuns:
    def test_stale_active_runs_are_failed(self, ledger, monkeypatch) -> None:
        stale = _running(ledger, "civitai")
        queued = ledger.create_run("danbooru")
        done = _running(ledger, "ollama")
        ledger.finalize(done.id, FetchRunStatus.COMPLETED)

        later = datetime.now(timezone.utc) + timedelta(hours=3)
        monkeypatch.setattr(ledger_module, "_utcnow", lambda: later)
        failed = ledger.fail_abandoned_runs(older_than=timedelta(hours=2))

        assert {run.id for run in failed} == {stale.id, queued.id}
        assert ledger.get_run(stale.id).status == FetchRunStatus.FAILED
        assert ledger.get_run(stale.id).error_message == ABANDONED_RUN_MESSAGE
        assert ledger.get_run(done.id).status == FetchRunStatus.COMPLETED
        assert ledger.create_run("civitai").status == FetchRunStatus.QUEUED

    def test_recent_active_runs_are_left_alone(self, ledger) -> None:
        run = _running(ledger)
        assert ledger.fail_abandoned_runs(older_than=timedelta(hours=2)) == []
        assert ledger.get_run(run.id).status == FetchRunStatus.RUNNING


# ---------------------------------------------------------------------------
# Backend specifics
# ---------------------------------------------------------------------------


class TestJsonFileLedger:
    def test_runs_survive_a_reload(self, tmp_path) -> None:
        path = tmp_path / "fetch_runs.json"
        ledger = JsonFileFetchRunLedger(path)
        run = _running(ledger)
        ledger.record_outcome(run.id, UpsertOutcome.CREATED)
        ledger.checkpoint(run.id, "2")

        reloaded = JsonFileFetchRunLedger(path)
        restored = reloaded.get_run(run.id)
        assert restored.status == FetchRunStatus.RUNNING
        assert restored.records_created == 1
        assert restored.cursor == "2"
        with pytest.raises(ActiveRunExistsError):
            reloaded.create_run("civitai")

    def test_returned_records_are_copies(self, tmp_path) -> None:
        ledger = JsonFileFetchRunLedger(tmp_path / "fetch_runs.json")
        run = ledger.create_run("civitai")
        run.status = FetchRunStatus.COMPLETED
        assert ledger.get_run(run.id).status == FetchRunStatus.QUEUED


class TestDatabaseLedger:
    def test_source_row_is_created_once(self, session_factory) -> None:
        ledger = DatabaseFetchRunLedger(session_factory)
        run = ledger.create_run("civitai")
        ledger.finalize(run.id, FetchRunStatus.CANCELLED)
        DatabaseFetchRunLedger(session_factory).create_run("civitai")

        with session_factory() as session:
            assert session.scalar(select(func.count()).select_from(Source)) == 1

    def test_fresh_ledger_reads_existing_runs(self, session_factory) -> None:
        run = _running(DatabaseFetchRunLedger(session_factory))
        reader = DatabaseFetchRunLedger(session_factory)

        assert reader.get_run(run.id).source == "civitai"
        assert reader.get_latest("civitai").id == run.id
        assert reader.has_running("civitai") is True
