"""
db/models/fetch_run.py

Audit record for one ingestion attempt against one source.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, JSONType, TimestampMixin
from db.models.source import Source


class FetchRunStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ACTIVE = frozenset({QUEUED, RUNNING})
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


_ACTIVE_STATUS_PREDICATE = text("status IN ('queued', 'running')")


class FetchRun(Base, TimestampMixin):
    __tablename__ = "fetch_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=FetchRunStatus.QUEUED,
        comment="queued, running, completed, failed, cancelled",
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    records_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_no_op: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_error: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cursor: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Opaque page token of the last processed page",
    )
    parameters: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Connector parameters the run was started with",
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    source: Mapped[Source] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_fetch_runs_source_id_started_at", "source_id", "started_at"),
        Index("ix_fetch_runs_status", "status"),
        # The no-overlap claim: a second queued/running row for a source is rejected.
        Index(
            "uq_fetch_runs_active_source",
            "source_id",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_PREDICATE,
            sqlite_where=_ACTIVE_STATUS_PREDICATE,
        ),
    )
