"""
app/mappers/comfyui_mapper.py

Maps ComfyUI workflow files to catalog entities.
"""

from __future__ import annotations

import json
from pathlib import PurePosixPath
from typing import Any

from app.connectors.base import parse_iso_datetime
from app.mappers.tags import normalize_tags, optional_str, require_identifier, require_mapping
from db.models.catalog_entity import CatalogEntityKind
from ingestion.base import RawRecord
from ingestion.errors import RecordMappingError
from ingestion.upsert import EntityMapper, EntitySpec

_SOURCE = "comfyui"


def count_nodes(graph: Any) -> int:
    """
    Count workflow nodes. UI exports keep a ``nodes`` array; API exports key
    each node by its numeric id.
    """

    if isinstance(graph, dict) and isinstance(graph.get("nodes"), list):
        return len(graph["nodes"])
    if isinstance(graph, dict):
        return sum(1 for key in graph if str(key).isdigit())
    return 0


def node_types(graph: Any) -> list[str]:
    if not isinstance(graph, dict):
        return []
    if isinstance(graph.get("nodes"), list):
        nodes = [node for node in graph["nodes"] if isinstance(node, dict)]
        types = [node.get("type") for node in nodes]
    else:
        types = [
            node.get("class_type")
            for key, node in graph.items()
            if str(key).isdigit() and isinstance(node, dict)
        ]
    return [value for value in types if isinstance(value, str)]


def workflow_name(graph: Any, file_name: str) -> str:
    if isinstance(graph, dict):
        extra = graph.get("extra")
        ds = extra.get("ds") if isinstance(extra, dict) else None
        name = optional_str(ds.get("workflow_name")) if isinstance(ds, dict) else None
        if name:
            return name
    return PurePosixPath(file_name).stem


class ComfyUIWorkflowMapper(EntityMapper):
    """
    A workflow file becomes one ``workflow`` entity keyed by its path under
    the base directory. Node class names become catalog tags.
    """

    kind = CatalogEntityKind.WORKFLOW

    def external_id(self, raw: RawRecord) -> str:
        return require_identifier(raw, "relative_path", _SOURCE)

    def map_record(self, raw: RawRecord) -> EntitySpec:
        record = require_mapping(raw, _SOURCE)
        external_id = self.external_id(record)
        if record.get("read_error"):
            raise RecordMappingError(f"{_SOURCE}: cannot read {external_id}: {record['read_error']}")

        content = record.get("content")
        if not isinstance(content, str):
            raise RecordMappingError(f"{_SOURCE}: {external_id} has no content.")
        try:
            graph = json.loads(content)
        except json.JSONDecodeError as exc:
            raise RecordMappingError(f"{_SOURCE}: {external_id} is not valid JSON: {exc}") from exc

        file_name = optional_str(record.get("file_name")) or external_id
        return EntitySpec(
            external_id=external_id,
            kind=self.kind,
            name=workflow_name(graph, file_name),
            description=optional_str(graph.get("description")) if isinstance(graph, dict) else None,
            flags={"node_count": count_nodes(graph)},
            payload={"graph": graph, "path": record.get("path")},
            source_updated_at=parse_iso_datetime(optional_str(record.get("modified_at"))),
            tags=normalize_tags(node_types(graph), category="node"),
        )
