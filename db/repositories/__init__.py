"""
Repository layer exports.
"""

from db.repositories.fetch_run_repository import FetchRunRepository
from db.repositories.source_repository import SourceRepository

__all__ = [
    "FetchRunRepository",
    "SourceRepository",
]
