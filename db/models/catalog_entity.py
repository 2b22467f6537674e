"""
db/models/catalog_entity.py

Ingested catalog entities (models, posts, workflows) and their children
(versions, artifacts, images).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, JSONType, TimestampMixin


class CatalogEntityKind:
    MODEL = "model"
    POST = "post"
    WORKFLOW = "workflow"


class CatalogChildKind:
    VERSION = "version"
    ARTIFACT = "artifact"
    IMAGE = "image"


class CatalogEntity(Base, TimestampMixin):
    __tablename__ = "catalog_entities"

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
    external_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Upstream identifier, natural key together with source_id",
    )
    kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="model, post, workflow",
    )
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    flags: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Compared scalar attributes such as type, nsfw, rating",
    )
    payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
        comment="Raw upstream metadata, refreshed whenever a change is detected",
    )
    source_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    children: Mapped[list[CatalogEntityChild]] = relationship(
        back_populates="entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="CatalogEntityChild.created_at",
    )

    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_catalog_entities_source_external"),
        Index("ix_catalog_entities_kind", "kind"),
        Index("ix_catalog_entities_name", "name"),
    )


class CatalogEntityChild(Base, TimestampMixin):
    __tablename__ = "catalog_entity_children"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("catalog_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="version, artifact, image",
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_external_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="External id of the sibling child this one hangs off (artifact -> version)",
    )
    name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attributes: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    entity: Mapped[CatalogEntity] = relationship(back_populates="children")

    __table_args__ = (
        UniqueConstraint(
            "entity_id",
            "kind",
            "external_id",
            name="uq_catalog_entity_children_entity_kind_external",
        ),
        Index("ix_catalog_entity_children_content_hash", "content_hash"),
    )
