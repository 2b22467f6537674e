"""
ingestion/upsert.py

Idempotent, change-aware upsert of catalog entities, their children and tags.

Each raw record is handled in its own transaction:

1. the mapper computes the external id and an ``EntitySpec``,
2. the entity is resolved by ``(source_id, external_id)``,
3. absent -> insert entity + children + tag links, classified ``created``,
4. present -> diff the comparison projection (name, description, flags,
   source timestamp, children by ``(kind, external_id)``, tag set) and apply
   the differences, classified ``updated`` or ``no_op``.

A failure anywhere rolls back that record only and is reported as ``error``.
An insert that loses a race on the ``(source_id, external_id)`` unique
constraint falls back to the update path instead of creating a duplicate.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.base import as_utc
from db.models.catalog_entity import CatalogEntity, CatalogEntityChild
from db.models.tag import GLOBAL_TAG_SCOPE, CatalogEntityTag, Tag
from ingestion.base import RawRecord

logger = logging.getLogger(__name__)


class TagPolicy:
    """
    How an entity's tag links follow the upstream tag set.

    RECONCILE adds missing links and removes links no longer present.
    APPEND_ONLY only adds.
    """

    RECONCILE = "reconcile"
    APPEND_ONLY = "append_only"

    ALL = frozenset({RECONCILE, APPEND_ONLY})


class UpsertOutcome:
    CREATED = "created"
    UPDATED = "updated"
    NO_OP = "no_op"
    ERROR = "error"


@dataclass(frozen=True)
class TagSpec:
    name: str
    category: str | None = None


@dataclass(frozen=True)
class ChildSpec:
    kind: str
    external_id: str
    name: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] | None = None
    parent_external_id: str | None = None
    content_hash: str | None = None


@dataclass(frozen=True)
class EntitySpec:
    """
    Mapped form of one raw record. ``flags`` and child ``attributes`` take
    part in change detection; ``payload`` is stored but never compared.
    """

    external_id: str
    kind: str
    name: str
    description: str | None = None
    flags: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] | None = None
    source_updated_at: datetime | None = None
    children: tuple[ChildSpec, ...] = ()
    tags: tuple[TagSpec, ...] = ()


@dataclass(frozen=True)
class UpsertResult:
    outcome: str
    external_id: str | None
    entity_id: uuid.UUID | None = None
    error: str | None = None


class EntityMapper(ABC):
    """
    Per-source translation of raw upstream records into ``EntitySpec``.
    """

    kind: str

    def __init__(
        self,
        *,
        tag_policy: str = TagPolicy.RECONCILE,
        tag_scope: str = GLOBAL_TAG_SCOPE,
    ) -> None:
        if tag_policy not in TagPolicy.ALL:
            raise ValueError(f"Unsupported tag policy '{tag_policy}'. Allowed: {sorted(TagPolicy.ALL)}.")
        self.tag_policy = tag_policy
        self.tag_scope = tag_scope

    @abstractmethod
    def external_id(self, raw: RawRecord) -> str:
        """
        Return the upstream identifier of ``raw``.
        """

    @abstractmethod
    def map_record(self, raw: RawRecord) -> EntitySpec:
        """
        Map ``raw`` to an entity spec. Raise ``RecordMappingError`` for malformed input.
        """


class UpsertEngine:
    """
    Applies mapped records to the catalog tables through one SQLAlchemy session.

    The session is owned by the caller; the engine commits or rolls back once
    per record.
    """

    def __init__(self, session: Session, *, mapper: EntityMapper) -> None:
        self._session = session
        self._mapper = mapper

    def upsert(self, source_id: uuid.UUID, raw: RawRecord) -> UpsertResult:
        external_id: str | None = None
        try:
            external_id = self._mapper.external_id(raw)
            spec = self._mapper.map_record(raw)
            outcome, entity = self._apply(source_id, spec)
            self._session.commit()
        except Exception as exc:
            self._session.rollback()
            message = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Record upsert failed source_id=%s external_id=%s error=%s",
                source_id,
                external_id,
                message,
            )
            return UpsertResult(
                outcome=UpsertOutcome.ERROR,
                external_id=external_id,
                error=message[:2000],
            )

        return UpsertResult(outcome=outcome, external_id=external_id, entity_id=entity.id)

    def _apply(self, source_id: uuid.UUID, spec: EntitySpec) -> tuple[str, CatalogEntity]:
        entity = self._find_entity(source_id, spec.external_id)
        if entity is None:
            try:
                return UpsertOutcome.CREATED, self._insert_entity(source_id, spec)
            except IntegrityError:
                entity = self._find_entity(source_id, spec.external_id)
                if entity is None:
                    raise
                logger.info(
                    "Entity already inserted by a concurrent writer source_id=%s external_id=%s",
                    source_id,
                    spec.external_id,
                )

        changed = self._update_entity(entity, spec)
        if self._sync_children(entity, spec.children):
            changed = True
        if self._sync_tags(entity, spec.tags):
            changed = True
        self._session.flush()
        return (UpsertOutcome.UPDATED if changed else UpsertOutcome.NO_OP), entity

    def _find_entity(self, source_id: uuid.UUID, external_id: str) -> CatalogEntity | None:
        stmt = select(CatalogEntity).where(
            CatalogEntity.source_id == source_id,
            CatalogEntity.external_id == external_id,
        )
        return self._session.scalars(stmt).first()

    def _insert_entity(self, source_id: uuid.UUID, spec: EntitySpec) -> CatalogEntity:
        entity = CatalogEntity(
            source_id=source_id,
            external_id=spec.external_id,
            kind=spec.kind,
            name=spec.name,
            description=spec.description,
            flags=dict(spec.flags),
            payload=spec.payload,
            source_updated_at=spec.source_updated_at,
            children=[_new_child(child) for child in _unique_children(spec.children)],
        )
        # Raises IntegrityError with the savepoint rolled back when the row exists.
        with self._session.begin_nested():
            self._session.add(entity)
            self._session.flush()
            self._sync_tags(entity, spec.tags)
            self._session.flush()
        return entity

    def _update_entity(self, entity: CatalogEntity, spec: EntitySpec) -> bool:
        if (
            entity.name == spec.name
            and entity.description == spec.description
            and dict(entity.flags or {}) == dict(spec.flags)
            and as_utc(entity.source_updated_at) == as_utc(spec.source_updated_at)
        ):
            return False

        entity.name = spec.name
        entity.description = spec.description
        entity.flags = dict(spec.flags)
        entity.payload = spec.payload
        entity.source_updated_at = spec.source_updated_at
        return True

    def _sync_children(self, entity: CatalogEntity, children: Iterable[ChildSpec]) -> bool:
        specs = _unique_children(children)
        by_key = {(child.kind, child.external_id): child for child in entity.children}
        # Rows some spec in this record names by key are never hash-matched to another spec.
        claimed = {(spec.kind, spec.external_id) for spec in specs}
        matched: set[int] = set()
        changed = False

        for spec in specs:
            key = (spec.kind, spec.external_id)
            existing = by_key.get(key)
            if existing is None and spec.content_hash:
                existing = _hash_match(entity.children, spec, claimed, matched)

            if existing is None:
                child = _new_child(spec)
                entity.children.append(child)
                by_key[key] = child
                matched.add(id(child))
                changed = True
                continue

            matched.add(id(existing))
            if not _child_differs(existing, spec):
                continue

            previous_key = (existing.kind, existing.external_id)
            if previous_key != key:
                by_key.pop(previous_key, None)
                by_key[key] = existing
            existing.external_id = spec.external_id
            existing.name = spec.name
            existing.attributes = dict(spec.attributes)
            existing.payload = spec.payload
            existing.parent_external_id = spec.parent_external_id
            existing.content_hash = spec.content_hash
            changed = True

        return changed

    def _sync_tags(self, entity: CatalogEntity, tags: Iterable[TagSpec]) -> bool:
        desired: dict[str, str | None] = {}
        for tag in tags:
            name = tag.name.strip()
            if name and name not in desired:
                desired[name] = tag.category

        scope = self._mapper.tag_scope
        linked_stmt = (
            select(Tag)
            .join(CatalogEntityTag, CatalogEntityTag.tag_id == Tag.id)
            .where(CatalogEntityTag.entity_id == entity.id, Tag.scope == scope)
        )
        linked = {tag.name: tag for tag in self._session.scalars(linked_stmt)}

        to_add = [name for name in desired if name not in linked]
        to_remove: list[Tag] = []
        if self._mapper.tag_policy == TagPolicy.RECONCILE:
            to_remove = [tag for name, tag in linked.items() if name not in desired]

        for name in to_add:
            tag = self._get_or_create_tag(scope, name, desired[name])
            self._session.add(CatalogEntityTag(entity_id=entity.id, tag_id=tag.id))

        if to_remove:
            self._session.execute(
                delete(CatalogEntityTag).where(
                    CatalogEntityTag.entity_id == entity.id,
                    CatalogEntityTag.tag_id.in_([tag.id for tag in to_remove]),
                )
            )

        return bool(to_add or to_remove)

    def _get_or_create_tag(self, scope: str, name: str, category: str | None) -> Tag:
        stmt = select(Tag).where(Tag.scope == scope, Tag.name == name)
        tag = self._session.scalars(stmt).first()
        if tag is not None:
            return tag

        tag = Tag(scope=scope, name=name, category=category)
        try:
            with self._session.begin_nested():
                self._session.add(tag)
                self._session.flush()
        except IntegrityError:
            existing = self._session.scalars(stmt).first()
            if existing is None:
                raise
            return existing
        return tag


def _unique_children(children: Iterable[ChildSpec]) -> list[ChildSpec]:
    seen: set[tuple[str, str]] = set()
    unique: list[ChildSpec] = []
    for child in children:
        key = (child.kind, child.external_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(child)
    return unique


def _new_child(spec: ChildSpec) -> CatalogEntityChild:
    return CatalogEntityChild(
        kind=spec.kind,
        external_id=spec.external_id,
        parent_external_id=spec.parent_external_id,
        name=spec.name,
        content_hash=spec.content_hash,
        attributes=dict(spec.attributes),
        payload=spec.payload,
    )


def _child_differs(child: CatalogEntityChild, spec: ChildSpec) -> bool:
    return (
        child.external_id != spec.external_id
        or child.name != spec.name
        or dict(child.attributes or {}) != dict(spec.attributes)
        or child.parent_external_id != spec.parent_external_id
        or child.content_hash != spec.content_hash
    )


def _hash_match(
    rows: Iterable[CatalogEntityChild],
    spec: ChildSpec,
    claimed: set[tuple[str, str]],
    matched: set[int],
) -> CatalogEntityChild | None:
    """
    Find a row that is the same content as ``spec`` under an old external id:
    same kind, parent and content hash, not named by any spec of the record
    and not already matched in this pass.
    """

    for row in rows:
        if (
            row.kind == spec.kind
            and row.content_hash == spec.content_hash
            and row.parent_external_id == spec.parent_external_id
            and (row.kind, row.external_id) not in claimed
            and id(row) not in matched
        ):
            return row
    return None
