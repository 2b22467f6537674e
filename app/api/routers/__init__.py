"""
app/api/routers package marker.
"""

from app.api.routers.fetch_runs import router as fetch_runs_router

__all__ = [
    "fetch_runs_router",
]
