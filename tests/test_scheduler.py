"""
tests/test_scheduler.py

IngestionScheduler: schedule parsing, job registration, manual triggers and
the shutdown path.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

import ingestion.ledger as ledger_module
from app.config import IngestionSettings
from app.scheduler.jobs import IngestionScheduler, job_id_for, parse_schedule
from db.models.fetch_run import FetchRunStatus
from ingestion.coordinator import SHUTDOWN_CANCEL_REASON, IngestionCoordinator, SourceDefinition
from ingestion.ledger import ABANDONED_RUN_MESSAGE, DatabaseFetchRunLedger
from tests.fakes import FakeConnector, FakeMapper, make_caller, make_record


def _scheduler(session_factory, connectors, schedules=None, **settings) -> IngestionScheduler:
    coordinator = IngestionCoordinator(
        ledger=DatabaseFetchRunLedger(session_factory),
        session_factory=session_factory,
        definitions=[
            SourceDefinition(
                name=connector.source,
                connector=connector,
                mapper=FakeMapper(),
                caller=make_caller(connector.source),
                page_delay_seconds=0.0,
            )
            for connector in connectors
        ],
    )
    settings.setdefault("scheduler_max_workers", 2)
    return IngestionScheduler(
        coordinator=coordinator,
        schedules=schedules or {},
        settings=IngestionSettings(**settings),
    )


class TestParseSchedule:
    def test_interval(self) -> None:
        trigger = parse_schedule("interval:3600")
        assert isinstance(trigger, IntervalTrigger)
        assert trigger.interval == timedelta(hours=1)

    def test_crontab(self) -> None:
        assert isinstance(parse_schedule(" 0 */6 * * * "), CronTrigger)

    @pytest.mark.parametrize("schedule", ["interval:abc", "interval:0", "interval:-5", "every day", "61 * * * *"])
    def test_invalid(self, schedule: str) -> None:
        with pytest.raises(ValueError):
            parse_schedule(schedule)


class TestJobs:
    def test_register_jobs_skips_sources_without_schedule(self, session_factory) -> None:
        scheduler = _scheduler(
            session_factory,
            [FakeConnector([], source="alpha"), FakeConnector([], source="beta")],
            schedules={"alpha": "interval:60", "beta": ""},
        )
        try:
            assert scheduler.register_jobs() == 1
            assert [job.id for job in scheduler.get_jobs()] == [job_id_for("alpha")]
        finally:
            scheduler.shutdown()

    def test_run_source_logs_and_swallows_unknown_source(self, session_factory) -> None:
        scheduler = _scheduler(session_factory, [FakeConnector([])])
        try:
            assert scheduler.run_source("missing") is None
        finally:
            scheduler.shutdown()

    def test_run_source_runs_to_completion(self, session_factory) -> None:
        scheduler = _scheduler(session_factory, [FakeConnector([[make_record(1)]])])
        try:
            result = scheduler.run_source("fake")
            assert result.run.status == FetchRunStatus.COMPLETED
        finally:
            scheduler.shutdown()


class TestManualTrigger:
    def test_trigger_now_runs_in_the_background(self, session_factory) -> None:
        scheduler = _scheduler(session_factory, [FakeConnector([[make_record(1), make_record(2)]])])
        try:
            claimed, future = scheduler.trigger_now("fake")

            assert claimed.skipped is False
            assert claimed.run.status == FetchRunStatus.QUEUED
            final = future.result(timeout=30)
            assert final.id == claimed.run.id
            assert final.status == FetchRunStatus.COMPLETED
            assert final.records_created == 2
        finally:
            scheduler.shutdown()

    def test_second_trigger_is_skipped_while_running(self, session_factory) -> None:
        fetching = threading.Event()
        release = threading.Event()

        def block(page_token: str | None) -> None:
            fetching.set()
            release.wait(timeout=10)

        scheduler = _scheduler(session_factory, [FakeConnector([[make_record(1)]], on_fetch=block)])
        try:
            _, future = scheduler.trigger_now("fake")
            assert fetching.wait(timeout=10)

            skipped, no_future = scheduler.trigger_now("fake")
            assert skipped.skipped is True
            assert no_future is None
            assert scheduler.run_source("fake").skipped is True
        finally:
            release.set()
            scheduler.shutdown()

        assert future.result(timeout=30).status == FetchRunStatus.COMPLETED


class TestLifecycle:
    def test_shutdown_cancels_active_runs(self, session_factory) -> None:
        fetching = threading.Event()
        release = threading.Event()

        def block(page_token: str | None) -> None:
            fetching.set()
            release.wait(timeout=10)

        scheduler = _scheduler(session_factory, [FakeConnector([[make_record(1)], [make_record(2)]], on_fetch=block)])
        _, future = scheduler.trigger_now("fake")
        assert fetching.wait(timeout=10)

        timer = threading.Timer(0.2, release.set)
        timer.start()
        try:
            scheduler.shutdown(wait=True)
        finally:
            timer.cancel()
            release.set()

        final = future.result(timeout=30)
        assert final.status == FetchRunStatus.CANCELLED
        assert final.error_message == SHUTDOWN_CANCEL_REASON
        assert final.records_fetched == 0
        assert scheduler.coordinator.has_running("fake") is False

    def test_scheduled_job_after_shutdown_does_not_claim(self, session_factory) -> None:
        connector = FakeConnector([[make_record(1)]])
        scheduler = _scheduler(session_factory, [connector])
        scheduler.shutdown(wait=True)

        result = scheduler.run_source("fake")

        assert result.skipped is True
        assert result.reason == SHUTDOWN_CANCEL_REASON
        assert scheduler.coordinator.get_latest("fake") is None
        assert connector.calls == []


    def test_start_recovers_abandoned_runs(self, session_factory, monkeypatch) -> None:
        scheduler = _scheduler(session_factory, [FakeConnector([])], abandoned_run_minutes=30)
        stale = scheduler.coordinator.claim("fake").run

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        monkeypatch.setattr(ledger_module, "_utcnow", lambda: later)
        scheduler.start()
        try:
            assert scheduler.running is True
            recovered = scheduler.coordinator.ledger.get_run(stale.id)
            assert recovered.status == FetchRunStatus.FAILED
            assert recovered.error_message == ABANDONED_RUN_MESSAGE
        finally:
            scheduler.shutdown(wait=False)

        assert scheduler.running is False
