"""create sources, fetch_runs and catalog tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
_ACTIVE_STATUS_PREDICATE = sa.text("status IN ('queued', 'running')")


def upgrade() -> None:
    op.create_table(
        "sources",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "fetch_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("source_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_no_op", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_error", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cursor", sa.String(length=255), nullable=True),
        sa.Column("parameters", _JSON, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_fetch_runs_source_id_started_at",
        "fetch_runs",
        ["source_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_fetch_runs_status", "fetch_runs", ["status"], unique=False)
    op.create_index(
        "uq_fetch_runs_active_source",
        "fetch_runs",
        ["source_id"],
        unique=True,
        postgresql_where=_ACTIVE_STATUS_PREDICATE,
        sqlite_where=_ACTIVE_STATUS_PREDICATE,
    )

    op.create_table(
        "catalog_entities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("source_id", sa.Uuid(), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("flags", _JSON, nullable=False),
        sa.Column("payload", _JSON, nullable=True),
        sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["source_id"], ["sources.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_id", "external_id", name="uq_catalog_entities_source_external"),
    )
    op.create_index("ix_catalog_entities_kind", "catalog_entities", ["kind"], unique=False)
    op.create_index("ix_catalog_entities_name", "catalog_entities", ["name"], unique=False)

    op.create_table(
        "catalog_entity_children",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("parent_external_id", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=512), nullable=True),
        sa.Column("content_hash", sa.String(length=128), nullable=True),
        sa.Column("attributes", _JSON, nullable=False),
        sa.Column("payload", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["catalog_entities.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_id",
            "kind",
            "external_id",
            name="uq_catalog_entity_children_entity_kind_external",
        ),
    )
    op.create_index(
        "ix_catalog_entity_children_content_hash",
        "catalog_entity_children",
        ["content_hash"],
        unique=False,
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("scope", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scope", "name", name="uq_tags_scope_name"),
    )

    op.create_table(
        "catalog_entity_tags",
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("tag_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["catalog_entities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("entity_id", "tag_id"),
    )
    op.create_index("ix_catalog_entity_tags_tag_id", "catalog_entity_tags", ["tag_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_catalog_entity_tags_tag_id", table_name="catalog_entity_tags")
    op.drop_table("catalog_entity_tags")
    op.drop_table("tags")
    op.drop_index("ix_catalog_entity_children_content_hash", table_name="catalog_entity_children")
    op.drop_table("catalog_entity_children")
    op.drop_index("ix_catalog_entities_name", table_name="catalog_entities")
    op.drop_index("ix_catalog_entities_kind", table_name="catalog_entities")
    op.drop_table("catalog_entities")
    op.drop_index("uq_fetch_runs_active_source", table_name="fetch_runs")
    op.drop_index("ix_fetch_runs_status", table_name="fetch_runs")
    op.drop_index("ix_fetch_runs_source_id_started_at", table_name="fetch_runs")
    op.drop_table("fetch_runs")
    op.drop_table("sources")
