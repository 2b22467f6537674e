"""
app/mappers/danbooru_mapper.py

Maps Danbooru posts to catalog entities.
"""

from __future__ import annotations

from app.connectors.base import parse_iso_datetime
from app.mappers.tags import optional_int, optional_str, require_identifier, require_mapping
from db.models.catalog_entity import CatalogChildKind, CatalogEntityKind
from ingestion.base import RawRecord
from ingestion.upsert import ChildSpec, EntityMapper, EntitySpec, TagSpec

_SOURCE = "danbooru"

RATING_NAMES = {
    "g": "general",
    "s": "sensitive",
    "q": "questionable",
    "e": "explicit",
}

# Field holding each space-separated tag string, by tag category.
TAG_STRING_FIELDS = (
    ("general", "tag_string_general"),
    ("character", "tag_string_character"),
    ("copyright", "tag_string_copyright"),
    ("artist", "tag_string_artist"),
    ("meta", "tag_string_meta"),
)


def map_rating(rating: str | None) -> str | None:
    if rating is None:
        return None
    return RATING_NAMES.get(rating.strip().lower(), rating)


class DanbooruPostMapper(EntityMapper):
    """
    A post becomes one ``post`` entity with a single ``image`` child for its
    file. Tags keep Danbooru's own spelling and carry their category.
    """

    kind = CatalogEntityKind.POST

    def external_id(self, raw: RawRecord) -> str:
        return require_identifier(raw, "id", _SOURCE)

    def map_record(self, raw: RawRecord) -> EntitySpec:
        post = require_mapping(raw, _SOURCE)
        post_id = self.external_id(post)
        md5 = optional_str(post.get("md5"))

        children: tuple[ChildSpec, ...] = ()
        original_url = optional_str(post.get("file_url")) or optional_str(post.get("large_file_url"))
        if original_url or md5:
            children = (
                ChildSpec(
                    kind=CatalogChildKind.IMAGE,
                    external_id=md5 or post_id,
                    attributes={
                        "md5": md5,
                        "original_url": original_url,
                        "preview_url": optional_str(post.get("preview_file_url")),
                        "width": optional_int(post.get("image_width")),
                        "height": optional_int(post.get("image_height")),
                        "file_ext": optional_str(post.get("file_ext")),
                    },
                ),
            )

        return EntitySpec(
            external_id=post_id,
            kind=self.kind,
            name=f"Danbooru post {post_id}",
            description=optional_str(post.get("source")),
            flags={
                "rating": map_rating(optional_str(post.get("rating"))),
                "uploader_id": optional_int(post.get("uploader_id")),
            },
            payload={
                "score": post.get("score"),
                "fav_count": post.get("fav_count"),
                "created_at": post.get("created_at"),
                "updated_at": post.get("updated_at"),
                "source": post.get("source"),
            },
            source_updated_at=parse_iso_datetime(
                optional_str(post.get("updated_at")) or optional_str(post.get("created_at"))
            ),
            children=children,
            tags=self.extract_tags(post),
        )

    @staticmethod
    def extract_tags(post: RawRecord) -> tuple[TagSpec, ...]:
        seen: set[str] = set()
        tags: list[TagSpec] = []
        fields: tuple[tuple[str | None, str], ...] = TAG_STRING_FIELDS
        if not any(isinstance(post.get(field_name), str) for _, field_name in TAG_STRING_FIELDS):
            fields = ((None, "tag_string"),)
        for category, field_name in fields:
            value = post.get(field_name)
            if not isinstance(value, str):
                continue
            for name in value.split():
                name = name.strip().lower()
                if not name or name in seen:
                    continue
                seen.add(name)
                tags.append(TagSpec(name=name, category=category))
        return tuple(tags)
