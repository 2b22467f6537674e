"""
app/services package marker.
"""

from app.services.ingestion_service import (
    build_caller,
    build_ledger,
    build_source_definitions,
    get_ingestion_coordinator,
)

__all__ = [
    "build_caller",
    "build_ledger",
    "build_source_definitions",
    "get_ingestion_coordinator",
]
