"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.catalog_entity import (
    CatalogChildKind,
    CatalogEntity,
    CatalogEntityChild,
    CatalogEntityKind,
)
from db.models.fetch_run import FetchRun, FetchRunStatus
from db.models.source import Source
from db.models.tag import GLOBAL_TAG_SCOPE, CatalogEntityTag, Tag

__all__ = [
    "CatalogChildKind",
    "CatalogEntity",
    "CatalogEntityChild",
    "CatalogEntityKind",
    "CatalogEntityTag",
    "FetchRun",
    "FetchRunStatus",
    "GLOBAL_TAG_SCOPE",
    "Source",
    "Tag",
]
