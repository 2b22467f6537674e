"""
app/mappers/ollama_mapper.py

Maps locally installed Ollama models to catalog entities.
"""

from __future__ import annotations

from typing import Any

from app.connectors.base import parse_iso_datetime
from app.mappers.tags import normalize_tags, optional_int, optional_str, require_identifier, require_mapping
from db.models.catalog_entity import CatalogChildKind, CatalogEntityKind
from ingestion.base import RawRecord
from ingestion.errors import RecordMappingError
from ingestion.upsert import ChildSpec, EntityMapper, EntitySpec

_SOURCE = "ollama"
DEFAULT_MODEL_TAG = "latest"


class OllamaModelMapper(EntityMapper):
    """
    One record per model name (``llama3``), holding every installed
    ``name:tag`` listing. Each listing becomes a ``version`` child keyed by
    its tag; model families become catalog tags.
    """

    kind = CatalogEntityKind.MODEL

    def external_id(self, raw: RawRecord) -> str:
        return require_identifier(raw, "name", _SOURCE)

    def map_record(self, raw: RawRecord) -> EntitySpec:
        record = require_mapping(raw, _SOURCE)
        name = self.external_id(record)
        listings = [item for item in record.get("tags") or [] if isinstance(item, dict)]
        if not listings:
            raise RecordMappingError(f"{_SOURCE}: model '{name}' has no installed tags.")

        children: list[ChildSpec] = []
        families: list[str] = []
        modified: list[Any] = []
        for listing in listings:
            full_name = optional_str(listing.get("name") or listing.get("model")) or name
            _, _, tag = full_name.partition(":")
            details = listing.get("details") if isinstance(listing.get("details"), dict) else {}
            modified_at = parse_iso_datetime(optional_str(listing.get("modified_at")))
            if modified_at is not None:
                modified.append(modified_at)
            for family in [details.get("family"), *(details.get("families") or [])]:
                if isinstance(family, str) and family not in families:
                    families.append(family)

            digest = optional_str(listing.get("digest"))
            children.append(
                ChildSpec(
                    kind=CatalogChildKind.VERSION,
                    external_id=tag or DEFAULT_MODEL_TAG,
                    name=full_name,
                    attributes={
                        "digest": digest,
                        "size_bytes": optional_int(listing.get("size")),
                        "format": optional_str(details.get("format")),
                        "parameter_size": optional_str(details.get("parameter_size")),
                        "quantization_level": optional_str(details.get("quantization_level")),
                    },
                    payload=listing,
                )
            )

        return EntitySpec(
            external_id=name,
            kind=self.kind,
            name=name,
            flags={"family": families[0] if families else None},
            payload={"name": name, "tags": [child.name for child in children]},
            source_updated_at=max(modified) if modified else None,
            children=tuple(children),
            tags=normalize_tags(families),
        )
