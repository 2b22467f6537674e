from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

logger = logging.getLogger(__name__)

_SCHEDULE_ENV_BY_SOURCE = {
    "civitai": ("CIVITAI_ENABLED", "CIVITAI_SCHEDULE", True),
    "danbooru": ("DANBOORU_ENABLED", "DANBOORU_SCHEDULE", True),
    "e621": ("E621_ENABLED", "E621_SCHEDULE", False),
    "ollama": ("OLLAMA_ENABLED", "OLLAMA_SCHEDULE", False),
    "comfyui": ("COMFYUI_ENABLED", "COMFYUI_SCHEDULE", False),
}


def _env_enabled(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _validate_env() -> None:
    """
    Validate all required environment variables at startup.

    Collects every problem before raising so the operator can fix them in
    one restart cycle.

    Rules:
    - A database URL is required (catalog entities always live in the database).
    - Every enabled source's schedule must parse.
    - DANBOORU_USERNAME/DANBOORU_API_KEY and E621_LOGIN/E621_API_KEY are set in pairs or not at all.
    - COMFYUI_BASE_DIRECTORIES is required whenever COMFYUI_ENABLED is true.
    """

    from app.scheduler.jobs import parse_schedule
    from db.config import load_env_files

    load_env_files()

    errors: list[str] = []

    # --- Database URL ---------------------------------------------------
    if not any(
        os.getenv(name, "").strip()
        for name in ("DATABASE_URL", "CLOUD_DATABASE_URL", "LOCAL_DATABASE_URL")
    ):
        errors.append(
            "No database URL configured. Set DATABASE_URL, CLOUD_DATABASE_URL or LOCAL_DATABASE_URL."
        )

    # --- Ledger backend -------------------------------------------------
    ledger_backend = os.getenv("INGEST_LEDGER_BACKEND", "database").strip().lower()
    if ledger_backend not in {"database", "json"}:
        errors.append(
            f"INGEST_LEDGER_BACKEND='{ledger_backend}' is not valid. Allowed values: ['database', 'json']."
        )

    # --- Schedules ------------------------------------------------------
    for source, (enabled_env, schedule_env, default_enabled) in _SCHEDULE_ENV_BY_SOURCE.items():
        if not _env_enabled(enabled_env, default_enabled):
            continue
        schedule = os.getenv(schedule_env, "").strip()
        if not schedule:
            continue
        try:
            parse_schedule(schedule)
        except ValueError as exc:
            errors.append(f"{schedule_env} for source '{source}' is invalid: {exc}")

    # --- Image board credentials ----------------------------------------
    for login_env, key_env in (("DANBOORU_USERNAME", "DANBOORU_API_KEY"), ("E621_LOGIN", "E621_API_KEY")):
        if bool(os.getenv(login_env, "").strip()) != bool(os.getenv(key_env, "").strip()):
            errors.append(f"{login_env} and {key_env} must be set together.")

    # --- ComfyUI directories --------------------------------------------
    if _env_enabled("COMFYUI_ENABLED", False) and not os.getenv("COMFYUI_BASE_DIRECTORIES", "").strip():
        errors.append(
            "COMFYUI_BASE_DIRECTORIES is not set but COMFYUI_ENABLED is true. "
            "Set it or disable the connector with COMFYUI_ENABLED=false."
        )

    if errors:
        raise RuntimeError(
            "Startup validation failed: missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _configure_logging() -> None:
    """
    Configure root logging once for the API process. APScheduler logs every
    job execution at INFO, so it gets its own level.
    """

    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    scheduler_level = os.getenv("APSCHEDULER_LOG_LEVEL", "WARNING").strip().upper()
    logging.getLogger("apscheduler").setLevel(getattr(logging, scheduler_level, logging.WARNING))


def _verify_database() -> None:
    """
    Fail startup unless the database answers and every catalog table exists.

    Tables are never created here; missing ones mean ``alembic upgrade head``
    has not been run against this database.
    """

    from sqlalchemy import inspect as sa_inspect
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    import db.models  # noqa: F401  registers all ORM models on Base.metadata
    from db.base import Base
    from db.session import get_engine

    engine = get_engine()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            present = set(sa_inspect(connection).get_table_names())
    except SQLAlchemyError as exc:
        raise RuntimeError("Database unavailable.") from exc

    missing = sorted(set(Base.metadata.tables) - present)
    if missing:
        logger.critical(
            "Catalog schema incomplete missing_tables=%s; run 'alembic upgrade head' and restart",
            ", ".join(missing),
        )
        raise RuntimeError(f"Catalog tables missing from the database: {', '.join(missing)}.")
    logger.info("Database reachable and catalog schema present tables=%d", len(present))


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Verify the database, start the scheduler on boot; cancel runs and shut it down on exit."""
    _verify_database()

    from app.config import get_ingestion_settings
    from app.scheduler.jobs import build_scheduler

    scheduler = build_scheduler()
    application.state.ingestion_scheduler = scheduler
    if get_ingestion_settings().scheduler_enabled:
        scheduler.start()
        logger.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    else:
        logger.info("Scheduler disabled; manual triggers only")
    try:
        yield
    finally:
        scheduler.shutdown(wait=True)
        application.state.ingestion_scheduler = None
        logger.info("Scheduler shut down")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Catalog Ingestion API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import fetch_runs_router

    application.include_router(fetch_runs_router)

    @application.get("/health")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
