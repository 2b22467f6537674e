"""
app/mappers/tags.py

Tag normalization and small record-reading helpers shared by source mappers.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from ingestion.errors import RecordMappingError
from ingestion.upsert import TagSpec

_SEPARATOR_RE = re.compile(r"[\s_]+")
_INVALID_CHAR_RE = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUN_RE = re.compile(r"-+")


def normalize_tag(tag: str | None) -> str:
    """
    Normalize a free-form tag: lowercase, whitespace and underscores become
    hyphens, anything outside ``[a-z0-9-]`` is dropped, hyphen runs collapse
    and edge hyphens are trimmed.

    >>> normalize_tag("  Sci Fi__Art! ")
    'sci-fi-art'
    """

    if not tag or not tag.strip():
        return ""
    normalized = tag.strip().lower()
    normalized = _SEPARATOR_RE.sub("-", normalized)
    normalized = _INVALID_CHAR_RE.sub("", normalized)
    normalized = _HYPHEN_RUN_RE.sub("-", normalized)
    return normalized.strip("-")


def normalize_tags(tags: Iterable[Any] | None, category: str | None = None) -> tuple[TagSpec, ...]:
    """
    Normalize a list of tag names (or ``{"name": ...}`` objects), dropping
    empties and duplicates while keeping first-seen order.
    """

    if not tags:
        return ()
    seen: set[str] = set()
    specs: list[TagSpec] = []
    for item in tags:
        raw_name = item.get("name") if isinstance(item, dict) else item
        if not isinstance(raw_name, str):
            continue
        name = normalize_tag(raw_name)
        if not name or name in seen:
            continue
        seen.add(name)
        specs.append(TagSpec(name=name, category=category))
    return tuple(specs)


def require_mapping(raw: Any, source: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise RecordMappingError(f"{source}: expected an object record, got {type(raw).__name__}.")
    return raw


def require_identifier(raw: Any, key: str, source: str) -> str:
    """
    Read ``raw[key]`` as a non-empty string identifier.
    """

    value = require_mapping(raw, source).get(key)
    if value is None or isinstance(value, bool):
        raise RecordMappingError(f"{source}: record has no '{key}'.")
    text = str(value).strip()
    if not text:
        raise RecordMappingError(f"{source}: record has an empty '{key}'.")
    return text


def optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None
