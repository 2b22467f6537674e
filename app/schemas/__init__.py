"""
app/schemas package marker.
"""

from app.schemas.fetch_runs import (
    CancelResponse,
    FetchRunAcceptedResponse,
    FetchRunCounts,
    FetchRunListResponse,
    FetchRunResponse,
    SourceListResponse,
    SourceRunningResponse,
)

__all__ = [
    "CancelResponse",
    "FetchRunAcceptedResponse",
    "FetchRunCounts",
    "FetchRunListResponse",
    "FetchRunResponse",
    "SourceListResponse",
    "SourceRunningResponse",
]
