"""
db/session.py

SQLAlchemy engine and session factory.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.config import DatabaseSettings, get_database_settings


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """
    Let pysqlite honour SAVEPOINT and foreign keys.

    The driver's own transaction handling is switched off and SQLAlchemy
    emits BEGIN IMMEDIATE itself, so ``Session.begin_nested()`` works and
    writer threads queue on the busy timeout.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_db_engine(database_url: str | None = None) -> Engine:
    """
    Build an engine from ``database_url``, or from the environment when omitted.
    """

    settings = DatabaseSettings(url=database_url) if database_url else get_database_settings()

    if settings.is_sqlite:
        engine = create_engine(
            settings.url,
            echo=settings.echo,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.sqlite_busy_timeout_seconds,
            },
        )
        return enable_sqlite_savepoints(engine)

    return create_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=settings.pool_recycle_seconds,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Records handed back by the ledger and upsert engine are read after commit.
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
    )


_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Return the shared engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def _get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


def SessionLocal() -> Session:
    """Lazy session factory. Drop-in replacement for a sessionmaker() call."""
    return _get_session_factory()()
