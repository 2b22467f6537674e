"""
ingestion/base.py

Source connector contract consumed by the pagination walker.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

RawRecord = dict[str, Any]


@dataclass(frozen=True)
class ConnectorPage:
    """
    One upstream page.

    ``next_page_token`` is None when the connector knows nothing follows.
    ``is_last_page`` is set when the upstream declares this page the last one.
    """

    records: list[RawRecord]
    next_page_token: str | None = None
    is_last_page: bool = False


@dataclass(frozen=True)
class PageBatch:
    """
    A fetched page handed to the upsert loop, with its position in the walk.
    """

    page_number: int
    page_token: str | None
    records: list[RawRecord] = field(default_factory=list)


class SourceConnector(ABC):
    """
    Fetches raw records from one upstream system, one page per call.

    Implementations perform exactly one upstream operation per ``fetch_page``
    call and raise ``TransientUpstreamError`` / ``PermanentUpstreamError`` so
    the resilience layer can classify failures.
    """

    source: str

    @abstractmethod
    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        """
        Fetch the page addressed by ``page_token`` (None means the first page).
        """

    def first_page_token(self) -> str | None:
        """
        Token of the first page, used when a run has no cursor to resume from.
        """

        return None

    def describe(self) -> dict[str, Any]:
        """
        Connector parameters recorded on the fetch run for audit.
        """

        return {"source": self.source}
