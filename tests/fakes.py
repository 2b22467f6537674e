"""
tests/fakes.py

Fake connectors, mappers and clocks that stand in for real upstream sources.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import requests

from db.models.catalog_entity import CatalogEntityKind
from ingestion.base import ConnectorPage, RawRecord, SourceConnector
from ingestion.errors import RecordMappingError
from ingestion.resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from ingestion.upsert import ChildSpec, EntityMapper, EntitySpec, TagSpec


class FakeConnector(SourceConnector):
    """
    Serves ``pages`` by index; the page token is the index as a string.

    ``failures`` maps a page token to exceptions raised (one per call) before
    the page is served. ``on_fetch`` runs at the start of every call.
    """

    def __init__(
        self,
        pages: list[list[RawRecord]],
        *,
        source: str = "fake",
        declare_last: bool = True,
        failures: dict[str, list[Exception]] | None = None,
        on_fetch: Callable[[str | None], None] | None = None,
    ) -> None:
        self.source = source
        self.pages = pages
        self.declare_last = declare_last
        self.failures = failures or {}
        self.on_fetch = on_fetch
        self.calls: list[str | None] = []

    def first_page_token(self) -> str | None:
        return "0"

    def fetch_page(
        self,
        page_token: str | None,
        filters: Mapping[str, Any] | None = None,
    ) -> ConnectorPage:
        self.calls.append(page_token)
        if self.on_fetch is not None:
            self.on_fetch(page_token)
        pending = self.failures.get(page_token or "")
        if pending:
            raise pending.pop(0)

        index = int(page_token or 0)
        if index >= len(self.pages):
            return ConnectorPage(records=[])
        is_last = self.declare_last and index == len(self.pages) - 1
        return ConnectorPage(
            records=[dict(record) for record in self.pages[index]],
            next_page_token=None if is_last else str(index + 1),
            is_last_page=is_last,
        )


class FakeMapper(EntityMapper):
    """
    Raw record shape::

        {"id": 1, "name": "...", "description": "...", "type": "...",
         "updated_at": "2026-01-01T00:00:00+00:00",
         "children": [{"kind": "version", "id": "v1", "name": "...", "hash": "...", "parent": "..."}],
         "tags": ["a", "b"], "broken": False}
    """

    kind = CatalogEntityKind.MODEL

    def external_id(self, raw: RawRecord) -> str:
        if "id" not in raw:
            raise RecordMappingError("fake: record has no id.")
        return str(raw["id"])

    def map_record(self, raw: RawRecord) -> EntitySpec:
        if raw.get("broken"):
            raise RecordMappingError(f"fake: record {raw.get('id')} is broken.")
        updated_at = raw.get("updated_at")
        return EntitySpec(
            external_id=self.external_id(raw),
            kind=self.kind,
            name=raw.get("name"),
            description=raw.get("description"),
            flags={"type": raw.get("type")},
            payload=dict(raw),
            source_updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            children=tuple(
                ChildSpec(
                    kind=child["kind"],
                    external_id=str(child["id"]),
                    name=child.get("name"),
                    attributes={"size": child.get("size")},
                    content_hash=child.get("hash"),
                    parent_external_id=child.get("parent"),
                )
                for child in raw.get("children", [])
            ),
            tags=tuple(TagSpec(name=name) for name in raw.get("tags", [])),
        )


def make_record(record_id: int, **overrides: Any) -> RawRecord:
    record: RawRecord = {
        "id": record_id,
        "name": f"Model {record_id}",
        "description": None,
        "type": "checkpoint",
        "updated_at": "2026-01-01T00:00:00+00:00",
        "children": [{"kind": "version", "id": f"v{record_id}", "name": "v1"}],
        "tags": ["anime"],
    }
    record.update(overrides)
    return record


def make_caller(
    name: str = "fake",
    *,
    max_retries: int = 0,
    clock: Callable[[], float] | None = None,
    minimum_throughput: int = 5,
    failure_ratio: float = 0.5,
    break_duration_seconds: float = 60.0,
) -> ResilientCaller:
    breaker_kwargs: dict[str, Any] = {}
    if clock is not None:
        breaker_kwargs["clock"] = clock
    return ResilientCaller(
        retry_policy=RetryPolicy(
            max_retries=max_retries,
            backoff_initial_seconds=0.0,
            jitter_seconds=0.0,
        ),
        circuit_breaker=CircuitBreaker(
            name=name,
            failure_ratio=failure_ratio,
            minimum_throughput=minimum_throughput,
            sampling_window_seconds=30.0,
            break_duration_seconds=break_duration_seconds,
            **breaker_kwargs,
        ),
    )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int = 200, payload: Any = None, *, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self) -> Any:
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


class FakeHTTPSession:
    """
    Replays queued responses (or raises queued exceptions) and records every
    ``request`` call's keyword arguments.
    """

    def __init__(self, responses: list[FakeResponse | Exception]) -> None:
        self.headers: dict[str, str] = {}
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item
