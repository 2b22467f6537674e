"""
app/connectors/civitai_connector.py

CivitAI connector for the public model registry.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests

from app.config import CivitAISettings, ExternalHTTPSettings
from app.connectors.base import BaseConnector, parse_page_number
from ingestion.base import ConnectorPage
from ingestion.errors import PermanentUpstreamError

logger = logging.getLogger(__name__)


class CivitAIConnector(BaseConnector):
    """
    Pages through ``GET /models`` with numeric page tokens.

    The walk ends when ``metadata.totalPages`` is reached, or on an empty page
    when the upstream omits pagination metadata.
    """

    def __init__(
        self,
        *,
        settings: CivitAISettings,
        http_settings: ExternalHTTPSettings,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(source="civitai", http_settings=http_settings, session=session)
        self._settings = settings

    def first_page_token(self) -> str | None:
        return str(self._settings.start_page)

    def describe(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "base_url": self._settings.base_url,
            "page_size": self._settings.page_size,
            "start_page": self._settings.start_page,
        }

    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        page = parse_page_number(page_token, default=self._settings.start_page)
        params: dict[str, Any] = {"page": page, "limit": self._settings.page_size}
        if filters:
            params.update(filters)

        headers: dict[str, str] = {}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"

        payload = self._request_json(
            method="GET",
            url=f"{self._settings.base_url.rstrip('/')}/models",
            params=params,
            headers=headers or None,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise PermanentUpstreamError("civitai: unexpected /models payload shape.")

        items = payload["items"]
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        total_pages = metadata.get("totalPages")
        is_last_page = isinstance(total_pages, int) and page >= total_pages

        logger.info(
            "Fetched CivitAI models page=%s count=%s total_pages=%s",
            page,
            len(items),
            total_pages,
        )
        return ConnectorPage(
            records=items,
            next_page_token=None if is_last_page else str(page + 1),
            is_last_page=is_last_page,
        )
