"""
app/connectors/ollama_connector.py

Ollama connector for models installed on a local model server.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests

from app.config import ExternalHTTPSettings, OllamaSettings
from app.connectors.base import BaseConnector
from ingestion.base import ConnectorPage
from ingestion.errors import PermanentUpstreamError

logger = logging.getLogger(__name__)


class OllamaConnector(BaseConnector):
    """
    Lists local models via ``GET /api/tags``. The listing is a single page.
    """

    def __init__(
        self,
        *,
        settings: OllamaSettings,
        http_settings: ExternalHTTPSettings,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(source="ollama", http_settings=http_settings, session=session)
        self._settings = settings

    def describe(self) -> dict[str, Any]:
        return {"source": self.source, "base_url": self._settings.base_url}

    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        payload = self._request_json(
            method="GET",
            url=f"{self._settings.base_url.rstrip('/')}/api/tags",
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("models", []), list):
            raise PermanentUpstreamError("ollama: unexpected /api/tags payload shape.")

        models = payload.get("models") or []
        records = group_models_by_name(models)
        logger.info("Fetched Ollama models count=%s families=%s", len(models), len(records))
        return ConnectorPage(records=records, next_page_token=None, is_last_page=True)


def group_models_by_name(models: list[Any]) -> list[dict[str, Any]]:
    """
    Fold ``name:tag`` listings into one record per model name, keeping the
    upstream order of first appearance. Entries without a usable name are
    passed through unchanged so the mapper reports them.
    """

    grouped: dict[str, dict[str, Any]] = {}
    passthrough: list[dict[str, Any]] = []
    for model in models:
        full_name = (model.get("name") or model.get("model")) if isinstance(model, dict) else None
        if not isinstance(full_name, str) or not full_name.strip():
            passthrough.append({"name": None, "tags": [model]})
            continue
        base_name, _, _ = full_name.strip().partition(":")
        record = grouped.setdefault(base_name, {"name": base_name, "tags": []})
        record["tags"].append(model)
    return list(grouped.values()) + passthrough
