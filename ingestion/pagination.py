"""
ingestion/pagination.py

Drives a source connector page by page, under resilience protection.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

from ingestion.base import PageBatch, SourceConnector
from ingestion.cancellation import CancellationToken
from ingestion.errors import PageFetchError, RunCancelledError
from ingestion.resilience import ResilientCaller

logger = logging.getLogger(__name__)


class PaginationWalker:
    """
    Lazily walks a connector until one of these holds, checked in order:

    1. cancellation was requested,
    2. the connector returned an empty page,
    3. the connector declared the page the last one (or gave no next token),
    4. ``max_pages`` pages were fetched.

    The iterator is finite and cannot be restarted. A later run can resume by
    passing a stored cursor as ``start_token``.
    """

    def __init__(
        self,
        *,
        caller: ResilientCaller,
        page_delay_seconds: float = 0.1,
    ) -> None:
        self._caller = caller
        self._page_delay_seconds = max(0.0, page_delay_seconds)

    def walk(
        self,
        connector: SourceConnector,
        *,
        cancel_token: CancellationToken,
        start_token: str | None = None,
        filters: Mapping[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> Iterator[PageBatch]:
        page_token = start_token if start_token is not None else connector.first_page_token()
        pages_fetched = 0

        while True:
            cancel_token.raise_if_cancelled()
            if max_pages is not None and pages_fetched >= max_pages:
                logger.info(
                    "Pagination reached page limit source=%s max_pages=%s",
                    connector.source,
                    max_pages,
                )
                return

            page = self._fetch(connector, page_token, filters, cancel_token)
            pages_fetched += 1
            # A cancel that arrived while the request was in flight discards the page.
            cancel_token.raise_if_cancelled()

            if not page.records:
                logger.info(
                    "Pagination reached empty page source=%s page=%s token=%s",
                    connector.source,
                    pages_fetched,
                    page_token,
                )
                return

            yield PageBatch(
                page_number=pages_fetched,
                page_token=page_token,
                records=list(page.records),
            )

            if page.is_last_page or page.next_page_token is None:
                logger.info(
                    "Pagination reached last page source=%s page=%s",
                    connector.source,
                    pages_fetched,
                )
                return

            page_token = page.next_page_token
            if max_pages is not None and pages_fetched >= max_pages:
                continue
            if cancel_token.wait(self._page_delay_seconds):
                cancel_token.raise_if_cancelled()

    def _fetch(
        self,
        connector: SourceConnector,
        page_token: str | None,
        filters: Mapping[str, Any] | None,
        cancel_token: CancellationToken,
    ):
        try:
            return self._caller.call(
                lambda: connector.fetch_page(page_token, filters),
                cancel_token=cancel_token,
                description=f"{connector.source}:page={page_token}",
            )
        except RunCancelledError:
            raise
        except Exception as exc:
            raise PageFetchError(page_token, exc) from exc
