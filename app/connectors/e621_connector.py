"""
app/connectors/e621_connector.py

e621 connector for image board posts.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests

from app.config import E621Settings, ExternalHTTPSettings
from app.connectors.base import BaseConnector, parse_page_number
from ingestion.base import ConnectorPage
from ingestion.errors import PermanentUpstreamError

logger = logging.getLogger(__name__)


class E621Connector(BaseConnector):
    """
    Pages through ``GET /posts.json``, which wraps results as ``{"posts": [...]}``.

    e621 rejects requests without a descriptive User-Agent, so the configured
    agent is sent on every call. ``login`` plus ``api_key`` go as basic auth.
    """

    def __init__(
        self,
        *,
        settings: E621Settings,
        http_settings: ExternalHTTPSettings,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(source="e621", http_settings=http_settings, session=session)
        self._settings = settings

    def first_page_token(self) -> str | None:
        return "1"

    def describe(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "base_url": self._settings.base_url,
            "page_size": self._settings.page_size,
            "tags": self._settings.tags,
        }

    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        page = parse_page_number(page_token, default=1)
        params: dict[str, Any] = {"page": page, "limit": self._settings.page_size}
        tags = (filters or {}).get("tags") or self._settings.tags
        if tags:
            params["tags"] = tags

        auth = None
        if self._settings.login and self._settings.api_key:
            auth = (self._settings.login, self._settings.api_key)

        payload = self._request_json(
            method="GET",
            url=f"{self._settings.base_url.rstrip('/')}/posts.json",
            params=params,
            headers={"User-Agent": self._settings.user_agent},
            auth=auth,
        )
        posts = payload.get("posts") if isinstance(payload, dict) else None
        if not isinstance(posts, list):
            raise PermanentUpstreamError("e621: unexpected /posts.json payload shape.")

        is_last_page = len(posts) < self._settings.page_size
        logger.info("Fetched e621 posts page=%s count=%s", page, len(posts))
        return ConnectorPage(
            records=posts,
            next_page_token=None if is_last_page else str(page + 1),
            is_last_page=is_last_page,
        )
