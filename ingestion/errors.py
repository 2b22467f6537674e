"""
ingestion/errors.py

Exception hierarchy for the ingestion run coordinator.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base exception for ingestion failures."""


class UnknownSourceError(IngestionError):
    """Raised when a trigger names a source with no registered pipeline."""


class ActiveRunExistsError(IngestionError):
    """Raised by a ledger when the source already has a queued or running run."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"Source '{source}' already has an active fetch run.")


class InvalidRunTransitionError(IngestionError):
    """Raised when a fetch run status change is not allowed by the state machine."""


class RunNotFoundError(IngestionError):
    """Raised when a ledger operation references a run it does not know."""


class RunCancelledError(IngestionError):
    """Raised inside a run once its cancellation token has been signalled."""


class UpstreamError(IngestionError):
    """Base exception for a failed upstream call."""


class TransientUpstreamError(UpstreamError):
    """Network error, timeout, or HTTP 5xx. Eligible for retry."""


class PermanentUpstreamError(UpstreamError):
    """HTTP 4xx or an undecodable payload. Never retried."""


class CircuitOpenError(UpstreamError):
    """Raised without touching the network while the circuit breaker is open."""


class RetryExhaustedError(UpstreamError):
    """Raised when every retry attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: Exception) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Upstream call failed after {attempts} attempt(s): {last_error}")


class PageFetchError(IngestionError):
    """Raised by the pagination walker when a page cannot be fetched. Aborts the run."""

    def __init__(self, page_token: str | None, cause: Exception) -> None:
        self.page_token = page_token
        self.cause = cause
        super().__init__(f"Failed to fetch page token={page_token!r}: {cause}")


class RecordMappingError(IngestionError):
    """Raised by a mapper when one raw record cannot be mapped. Counted, never fatal."""
