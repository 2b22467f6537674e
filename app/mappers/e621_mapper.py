"""
app/mappers/e621_mapper.py

Maps e621 posts to catalog entities.
"""

from __future__ import annotations

from typing import Any

from app.connectors.base import parse_iso_datetime
from app.mappers.tags import optional_int, optional_str, require_identifier, require_mapping
from db.models.catalog_entity import CatalogChildKind, CatalogEntityKind
from ingestion.base import RawRecord
from ingestion.upsert import ChildSpec, EntityMapper, EntitySpec, TagSpec

_SOURCE = "e621"

RATING_NAMES = {
    "s": "safe",
    "safe": "safe",
    "q": "questionable",
    "questionable": "questionable",
    "e": "explicit",
    "explicit": "explicit",
}

# "invalid" is e621's bucket for malformed tags and is not ingested.
TAG_CATEGORIES = ("general", "species", "character", "copyright", "artist", "lore", "meta")


def map_rating(rating: str | None) -> str:
    if not rating:
        return "safe"
    return RATING_NAMES.get(rating.strip().lower(), "safe")


def _section(post: RawRecord, key: str) -> dict[str, Any]:
    value = post.get(key)
    return value if isinstance(value, dict) else {}


class E621PostMapper(EntityMapper):
    """
    A post becomes one ``post`` entity with an ``image`` child for its file.
    The file MD5 doubles as the child's content hash.
    """

    kind = CatalogEntityKind.POST

    def external_id(self, raw: RawRecord) -> str:
        return require_identifier(raw, "id", _SOURCE)

    def map_record(self, raw: RawRecord) -> EntitySpec:
        post = require_mapping(raw, _SOURCE)
        post_id = self.external_id(post)
        file_info = _section(post, "file")
        md5 = optional_str(file_info.get("md5"))
        url = optional_str(file_info.get("url"))

        children: tuple[ChildSpec, ...] = ()
        if url or md5:
            children = (
                ChildSpec(
                    kind=CatalogChildKind.IMAGE,
                    external_id=md5 or post_id,
                    content_hash=md5.lower() if md5 else None,
                    attributes={
                        "md5": md5,
                        "original_url": url,
                        "sample_url": optional_str(_section(post, "sample").get("url")),
                        "preview_url": optional_str(_section(post, "preview").get("url")),
                        "width": optional_int(file_info.get("width")),
                        "height": optional_int(file_info.get("height")),
                        "size_bytes": optional_int(file_info.get("size")),
                        "file_ext": optional_str(file_info.get("ext")),
                    },
                ),
            )

        return EntitySpec(
            external_id=post_id,
            kind=self.kind,
            name=f"e621 post {post_id}",
            description=optional_str(post.get("description")),
            flags={"rating": map_rating(optional_str(post.get("rating")))},
            payload={
                "score": post.get("score"),
                "fav_count": post.get("fav_count"),
                "created_at": post.get("created_at"),
                "updated_at": post.get("updated_at"),
                "sources": post.get("sources"),
            },
            source_updated_at=parse_iso_datetime(
                optional_str(post.get("updated_at")) or optional_str(post.get("created_at"))
            ),
            children=children,
            tags=self.extract_tags(post),
        )

    @staticmethod
    def extract_tags(post: RawRecord) -> tuple[TagSpec, ...]:
        grouped = _section(post, "tags")
        seen: set[str] = set()
        tags: list[TagSpec] = []
        for category in TAG_CATEGORIES:
            names = grouped.get(category)
            if not isinstance(names, list):
                continue
            for name in names:
                if not isinstance(name, str):
                    continue
                name = name.strip().lower()
                if not name or name in seen:
                    continue
                seen.add(name)
                tags.append(TagSpec(name=name, category=category))
        return tuple(tags)
