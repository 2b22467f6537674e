"""
app/scheduler/jobs.py

APScheduler-based scheduler for periodic per-source ingestion.

Jobs
----
One job per registered source, id ``ingest:<source>``. The trigger comes from
the source's schedule string:

  ``interval:<seconds>``  fixed interval, e.g. ``interval:3600``
  ``<crontab>``           five-field crontab in UTC, e.g. ``0 */6 * * *``

Each job runs ``IngestionCoordinator.trigger_ingestion``. Jobs use
``max_instances=1`` and ``coalesce=True``, and the coordinator's claim rejects
any overlap with a manual trigger of the same source, so a source never has
two active runs. Different sources run in parallel on the thread pool.

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``IngestionScheduler``.
``start()`` fails runs abandoned by a previous process, registers the jobs and
starts the background scheduler. ``shutdown()`` cancels every active run and
waits for the workers to finalize them. The scheduler is wired into FastAPI
via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta

from apscheduler.executors.pool import ThreadPoolExecutor as APSThreadPoolExecutor
from apscheduler.job import Job
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.config import (
    IngestionSettings,
    get_civitai_settings,
    get_comfyui_settings,
    get_danbooru_settings,
    get_e621_settings,
    get_ingestion_settings,
    get_ollama_settings,
)
from ingestion.coordinator import SHUTDOWN_CANCEL_REASON, IngestionCoordinator, TriggerResult
from ingestion.ledger import FetchRunRecord

logger = logging.getLogger(__name__)

_INTERVAL_PREFIX = "interval:"


def parse_schedule(schedule: str) -> BaseTrigger:
    """
    Turn a schedule string into an APScheduler trigger. Raises ValueError when
    the string is neither ``interval:<seconds>`` nor a valid crontab.
    """

    value = schedule.strip()
    if value.lower().startswith(_INTERVAL_PREFIX):
        raw_seconds = value[len(_INTERVAL_PREFIX) :].strip()
        try:
            seconds = int(raw_seconds)
        except ValueError as exc:
            raise ValueError(f"Invalid interval schedule {schedule!r}.") from exc
        if seconds <= 0:
            raise ValueError(f"Interval schedule must be positive: {schedule!r}.")
        return IntervalTrigger(seconds=seconds, timezone="UTC")

    try:
        return CronTrigger.from_crontab(value, timezone="UTC")
    except ValueError as exc:
        raise ValueError(f"Invalid crontab schedule {schedule!r}: {exc}") from exc


def job_id_for(source: str) -> str:
    return f"ingest:{source}"


class IngestionScheduler:
    """
    Owns the background scheduler, the manual-trigger worker pool, and the
    shutdown path that cancels active runs.
    """

    def __init__(
        self,
        *,
        coordinator: IngestionCoordinator,
        schedules: Mapping[str, str],
        settings: IngestionSettings,
    ) -> None:
        self._coordinator = coordinator
        self._schedules = dict(schedules)
        self._settings = settings
        self._scheduler = BackgroundScheduler(
            timezone="UTC",
            executors={"default": APSThreadPoolExecutor(max_workers=settings.scheduler_max_workers)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": settings.misfire_grace_seconds,
            },
        )
        self._manual_executor = ThreadPoolExecutor(
            max_workers=settings.scheduler_max_workers,
            thread_name_prefix="ingest-manual",
        )
        self._started = False

    @property
    def coordinator(self) -> IngestionCoordinator:
        return self._coordinator

    @property
    def running(self) -> bool:
        return self._started

    def get_jobs(self) -> list[Job]:
        return self._scheduler.get_jobs()

    def register_jobs(self) -> int:
        registered = 0
        for source in self._coordinator.sources:
            schedule = self._schedules.get(source)
            if not schedule:
                logger.info("Scheduler: no schedule for source=%s; manual trigger only", source)
                continue
            self._scheduler.add_job(
                self.run_source,
                trigger=parse_schedule(schedule),
                args=[source],
                id=job_id_for(source),
                name=f"Ingest {source}",
                replace_existing=True,
            )
            registered += 1
            logger.info("Scheduler: registered source=%s schedule=%r", source, schedule)
        return registered

    def recover_abandoned_runs(self) -> list[FetchRunRecord]:
        older_than = timedelta(minutes=self._settings.abandoned_run_minutes)
        return self._coordinator.ledger.fail_abandoned_runs(older_than=older_than)

    def start(self) -> None:
        if self._started:
            return
        recovered = self.recover_abandoned_runs()
        if recovered:
            logger.warning("Scheduler: failed %d abandoned fetch run(s)", len(recovered))
        self.register_jobs()
        self._scheduler.start()
        self._started = True

    def run_source(self, source: str) -> TriggerResult | None:
        """
        Scheduled job body. Failures are logged so the job stays registered.
        """

        logger.info("Scheduler: ingest source=%s starting", source)
        try:
            result = self._coordinator.trigger_ingestion(source)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scheduler: ingest source=%s crashed: %s", source, exc)
            return None

        if result.skipped:
            logger.info("Scheduler: ingest source=%s skipped (%s)", source, result.reason)
        elif result.run is not None:
            logger.info(
                "Scheduler: ingest source=%s finished status=%s run_id=%s",
                source,
                result.run.status,
                result.run.id,
            )
        return result

    def trigger_now(self, source: str) -> tuple[TriggerResult, Future[FetchRunRecord] | None]:
        """
        Claim ``source`` on the caller's thread and execute it in the worker
        pool. Returns the claim result and, when claimed, the run's future.
        """

        claimed = self._coordinator.claim(source)
        if claimed.skipped or claimed.run is None:
            return claimed, None
        future = self._manual_executor.submit(self._coordinator.execute, claimed.run)
        return claimed, future

    def cancel_source(self, source: str) -> bool:
        return self._coordinator.cancel_source(source)

    def cancel_run(self, run_id: uuid.UUID) -> bool:
        return self._coordinator.cancel_run(run_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._started:
            self._scheduler.pause()
        cancelled = self._coordinator.close(SHUTDOWN_CANCEL_REASON)
        if cancelled:
            logger.info("Scheduler: cancelled %d active run(s) for shutdown", cancelled)
        if self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
        self._manual_executor.shutdown(wait=wait)


def configured_schedules() -> dict[str, str]:
    return {
        "civitai": get_civitai_settings().schedule,
        "danbooru": get_danbooru_settings().schedule,
        "e621": get_e621_settings().schedule,
        "ollama": get_ollama_settings().schedule,
        "comfyui": get_comfyui_settings().schedule,
    }


def build_scheduler(coordinator: IngestionCoordinator | None = None) -> IngestionScheduler:
    """
    Build the ingestion scheduler for all registered sources.

    Returns a configured but *not yet started* ``IngestionScheduler``.
    The caller must call ``.start()`` and ``.shutdown(wait=True)`` at the
    appropriate lifecycle points.
    """

    if coordinator is None:
        from app.services.ingestion_service import get_ingestion_coordinator

        coordinator = get_ingestion_coordinator()

    return IngestionScheduler(
        coordinator=coordinator,
        schedules=configured_schedules(),
        settings=get_ingestion_settings(),
    )
