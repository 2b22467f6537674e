"""
app/connectors/base.py

HTTP connector base and shared request mechanics.

Connectors make exactly one HTTP attempt per page request. Retries and the
circuit breaker live in ``ingestion.resilience``; this module only classifies
failures so that layer can decide what to do with them.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import requests

from app.config import ExternalHTTPSettings
from ingestion.base import ConnectorPage, SourceConnector
from ingestion.errors import PermanentUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {500, 502, 503, 504}


class RequestRateLimiter:
    """Spaces outbound requests at least ``1 / per_second`` seconds apart."""

    def __init__(self, per_second: float) -> None:
        self.interval_seconds = 1.0 / per_second if per_second > 0 else 0.0
        self._next_allowed = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        if self.interval_seconds <= 0:
            return
        with self._lock:
            delay = self._next_allowed - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            self._next_allowed = time.monotonic() + self.interval_seconds


class BaseConnector(SourceConnector):
    """
    Connector interface for fetching raw pages from an HTTP API.
    """

    def __init__(
        self,
        *,
        source: str,
        http_settings: ExternalHTTPSettings,
        session: requests.Session | None = None,
    ) -> None:
        self.source = source
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", http_settings.user_agent)
        self._timeout_seconds = http_settings.timeout_seconds
        self._rate_limiter = RequestRateLimiter(http_settings.rate_limit_per_second)

    @abstractmethod
    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        """
        Fetch one page of raw records.
        """

    def _request_json(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> Any:
        """
        Execute an HTTP request and return parsed JSON.
        """

        response = self._request(method=method, url=url, params=params, headers=headers, auth=auth)
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentUpstreamError(f"{self.source}: response was not valid JSON.") from exc

    def _request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> requests.Response:
        """
        Execute a single HTTP request with rate limiting and failure classification.
        """

        self._rate_limiter.wait()
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                headers=headers,
                auth=auth,
                timeout=self._timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.warning(
                "Connector request transport failure source=%s url=%s error=%s",
                self.source,
                url,
                exc,
            )
            raise TransientUpstreamError(f"{self.source}: {type(exc).__name__}: {exc}") from exc

        status_code = response.status_code
        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            logger.warning(
                "Connector request server error source=%s status=%s url=%s",
                self.source,
                status_code,
                url,
            )
            raise TransientUpstreamError(f"{self.source}: HTTP {status_code} from {url}")

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            logger.error(
                "Connector request failed source=%s status=%s url=%s error=%s",
                self.source,
                status_code,
                url,
                exc,
            )
            raise PermanentUpstreamError(f"{self.source}: HTTP {status_code} from {url}") from exc
        return response


def parse_iso_datetime(value: str | None) -> datetime | None:
    """
    Parse an ISO datetime string into a timezone-aware datetime. Returns None
    for empty or unparseable input.
    """

    if not value:
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    # Ollama reports nanosecond precision; fromisoformat accepts at most microseconds.
    if "." in normalized:
        head, _, tail = normalized.partition(".")
        digits = ""
        for char in tail:
            if not char.isdigit():
                break
            digits += char
        normalized = f"{head}.{digits[:6].ljust(6, '0')}{tail[len(digits):]}"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_page_number(page_token: str | None, default: int = 1) -> int:
    """
    Decode a numeric page token. Raises PermanentUpstreamError for anything else.
    """

    if page_token is None:
        return default
    try:
        value = int(page_token)
    except ValueError as exc:
        raise PermanentUpstreamError(f"Invalid page token {page_token!r}.") from exc
    if value < 0:
        raise PermanentUpstreamError(f"Invalid page token {page_token!r}.")
    return value
