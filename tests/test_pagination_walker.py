"""
tests/test_pagination_walker.py

PaginationWalker stop conditions, cursor reporting and failure handling.
"""

from __future__ import annotations

import pytest

from ingestion.cancellation import CancellationToken
from ingestion.errors import (
    CircuitOpenError,
    PageFetchError,
    PermanentUpstreamError,
    RetryExhaustedError,
    RunCancelledError,
    TransientUpstreamError,
)
from ingestion.pagination import PaginationWalker
from tests.fakes import FakeClock, FakeConnector, make_caller


def _pages(count: int, per_page: int = 2) -> list[list[dict]]:
    return [[{"id": page * per_page + offset} for offset in range(per_page)] for page in range(count)]


def _walker(**kwargs) -> PaginationWalker:
    caller = kwargs.pop("caller", None) or make_caller(max_retries=kwargs.pop("max_retries", 0))
    return PaginationWalker(caller=caller, page_delay_seconds=0.0)


class TestPaginationWalker:
    def test_walks_until_last_page(self) -> None:
        connector = FakeConnector(_pages(3))
        batches = list(_walker().walk(connector, cancel_token=CancellationToken()))

        assert [batch.page_token for batch in batches] == ["0", "1", "2"]
        assert [batch.page_number for batch in batches] == [1, 2, 3]
        assert [record["id"] for batch in batches for record in batch.records] == [0, 1, 2, 3, 4, 5]
        assert connector.calls == ["0", "1", "2"]

    def test_stops_on_empty_page(self) -> None:
        connector = FakeConnector(_pages(2), declare_last=False)
        batches = list(_walker().walk(connector, cancel_token=CancellationToken()))

        assert len(batches) == 2
        assert connector.calls == ["0", "1", "2"]

    @pytest.mark.parametrize("max_pages, expected_calls", [(1, ["0"]), (2, ["0", "1"]), (10, ["0", "1", "2"])])
    def test_respects_max_pages(self, max_pages: int, expected_calls: list[str]) -> None:
        connector = FakeConnector(_pages(3))
        batches = list(
            _walker().walk(connector, cancel_token=CancellationToken(), max_pages=max_pages)
        )

        assert len(batches) == len(expected_calls)
        assert connector.calls == expected_calls

    def test_starts_from_given_token(self) -> None:
        connector = FakeConnector(_pages(3))
        batches = list(_walker().walk(connector, cancel_token=CancellationToken(), start_token="1"))

        assert [batch.page_token for batch in batches] == ["1", "2"]

    def test_is_lazy(self) -> None:
        connector = FakeConnector(_pages(3))
        iterator = _walker().walk(connector, cancel_token=CancellationToken())
        assert connector.calls == []

        next(iterator)
        assert connector.calls == ["0"]

    def test_cancelled_before_start_fetches_nothing(self) -> None:
        token = CancellationToken()
        token.cancel("stop")
        connector = FakeConnector(_pages(3))

        with pytest.raises(RunCancelledError):
            list(_walker().walk(connector, cancel_token=token))
        assert connector.calls == []

    def test_page_fetched_after_cancel_is_discarded(self) -> None:
        token = CancellationToken()

        def cancel_on_second_page(page_token: str | None) -> None:
            if page_token == "1":
                token.cancel("stop")

        connector = FakeConnector(_pages(3), on_fetch=cancel_on_second_page)
        received = []
        with pytest.raises(RunCancelledError):
            for batch in _walker().walk(connector, cancel_token=token):
                received.append(batch.page_token)

        assert received == ["0"]
        assert connector.calls == ["0", "1"]

    def test_transient_failure_is_retried(self) -> None:
        connector = FakeConnector(_pages(2), failures={"1": [TransientUpstreamError("503")]})
        batches = list(_walker(max_retries=1).walk(connector, cancel_token=CancellationToken()))

        assert len(batches) == 2
        assert connector.calls == ["0", "1", "1"]

    def test_permanent_failure_raises_page_fetch_error(self) -> None:
        connector = FakeConnector(_pages(3), failures={"1": [PermanentUpstreamError("404")]})
        received = []
        with pytest.raises(PageFetchError) as exc_info:
            for batch in _walker(max_retries=3).walk(connector, cancel_token=CancellationToken()):
                received.append(batch.page_token)

        assert received == ["0"]
        assert exc_info.value.page_token == "1"
        assert isinstance(exc_info.value.cause, PermanentUpstreamError)
        assert connector.calls == ["0", "1"]

    def test_exhausted_retries_raise_page_fetch_error(self) -> None:
        connector = FakeConnector(
            _pages(1),
            failures={"0": [TransientUpstreamError("503"), TransientUpstreamError("503")]},
        )
        with pytest.raises(PageFetchError) as exc_info:
            list(_walker(max_retries=1).walk(connector, cancel_token=CancellationToken()))

        assert isinstance(exc_info.value.cause, RetryExhaustedError)

    def test_open_circuit_raises_page_fetch_error(self) -> None:
        caller = make_caller(clock=FakeClock(), minimum_throughput=1, failure_ratio=1.0)
        caller.circuit_breaker.record_failure()
        connector = FakeConnector(_pages(1))

        with pytest.raises(PageFetchError) as exc_info:
            list(_walker(caller=caller).walk(connector, cancel_token=CancellationToken()))

        assert isinstance(exc_info.value.cause, CircuitOpenError)
        assert connector.calls == []
