"""
app/mappers/civitai_mapper.py

Maps CivitAI model records to catalog entities.

A model becomes one ``model`` entity. Its versions become ``version``
children; each version's files become ``artifact`` children (identified by
file id, matched by SHA-256 when the id is new) and its preview images become
``image`` children.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from app.connectors.base import parse_iso_datetime
from app.mappers.tags import (
    normalize_tags,
    optional_int,
    optional_str,
    require_identifier,
    require_mapping,
)
from db.models.catalog_entity import CatalogChildKind, CatalogEntityKind
from ingestion.base import RawRecord
from ingestion.errors import RecordMappingError
from ingestion.upsert import ChildSpec, EntityMapper, EntitySpec

_SOURCE = "civitai"


class CivitAIModelMapper(EntityMapper):
    kind = CatalogEntityKind.MODEL

    def external_id(self, raw: RawRecord) -> str:
        return require_identifier(raw, "id", _SOURCE)

    def map_record(self, raw: RawRecord) -> EntitySpec:
        record = require_mapping(raw, _SOURCE)
        name = optional_str(record.get("name"))
        if name is None:
            raise RecordMappingError(f"{_SOURCE}: model {record.get('id')} has no name.")

        versions = [item for item in record.get("modelVersions") or [] if isinstance(item, dict)]
        children: list[ChildSpec] = []
        published: list[datetime] = []
        for version in versions:
            version_children, published_at = self._map_version(version)
            children.extend(version_children)
            if published_at is not None:
                published.append(published_at)

        return EntitySpec(
            external_id=self.external_id(record),
            kind=self.kind,
            name=name,
            description=optional_str(record.get("description")),
            flags={
                "type": optional_str(record.get("type")),
                "nsfw": bool(record.get("nsfw", False)),
            },
            payload={key: value for key, value in record.items() if key != "modelVersions"},
            source_updated_at=max(published) if published else None,
            children=tuple(children),
            tags=normalize_tags(record.get("tags")),
        )

    def _map_version(self, version: dict[str, Any]) -> tuple[list[ChildSpec], datetime | None]:
        version_id = require_identifier(version, "id", _SOURCE)
        published_at = parse_iso_datetime(optional_str(version.get("publishedAt")))

        children = [
            ChildSpec(
                kind=CatalogChildKind.VERSION,
                external_id=version_id,
                name=optional_str(version.get("name")),
                attributes={
                    "published_at": published_at.isoformat() if published_at else None,
                    "base_model": optional_str(version.get("baseModel")),
                },
                payload={
                    key: value for key, value in version.items() if key not in {"files", "images"}
                },
            )
        ]

        for file_entry in version.get("files") or []:
            if isinstance(file_entry, dict):
                children.append(self._map_artifact(file_entry, version_id))

        for image in version.get("images") or []:
            if not isinstance(image, dict):
                continue
            image_id = optional_str(image.get("id")) or optional_str(image.get("url"))
            if image_id is None:
                continue
            children.append(
                ChildSpec(
                    kind=CatalogChildKind.IMAGE,
                    external_id=image_id,
                    parent_external_id=version_id,
                    attributes={
                        "url": optional_str(image.get("url")),
                        "width": optional_int(image.get("width")),
                        "height": optional_int(image.get("height")),
                        "nsfw_level": optional_str(image.get("nsfwLevel")),
                    },
                    payload=image,
                )
            )

        return children, published_at

    @staticmethod
    def _map_artifact(file_entry: dict[str, Any], version_id: str) -> ChildSpec:
        hashes = file_entry.get("hashes") if isinstance(file_entry.get("hashes"), dict) else {}
        sha256 = optional_str(hashes.get("SHA256") or hashes.get("sha256"))
        size_kb = file_entry.get("sizeKB")
        size_bytes = optional_int(float(size_kb) * 1024) if isinstance(size_kb, (int, float)) else None

        return ChildSpec(
            kind=CatalogChildKind.ARTIFACT,
            external_id=require_identifier(file_entry, "id", _SOURCE),
            name=optional_str(file_entry.get("name")),
            parent_external_id=version_id,
            content_hash=sha256.lower() if sha256 else None,
            attributes={
                "file_kind": optional_str(file_entry.get("type")),
                "size_bytes": size_bytes,
                "download_url": optional_str(file_entry.get("downloadUrl")),
            },
            payload=file_entry,
        )
