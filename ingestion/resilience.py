"""
ingestion/resilience.py

Retry and circuit-breaker protection for a single upstream call.

Composition
-----------
``ResilientCaller.call`` asks the breaker for permission once, then lets the
retry policy make up to ``1 + max_retries`` attempts, then reports one outcome
back to the breaker. The breaker therefore counts logical calls, never
individual retry attempts.

Failure classes
---------------
- ``TransientUpstreamError`` (network error, timeout, HTTP 5xx): retried with
  exponential backoff plus jitter. Exhaustion raises ``RetryExhaustedError``
  and counts as a breaker failure.
- ``PermanentUpstreamError`` (HTTP 4xx, bad payload): raised immediately. The
  upstream did answer, so the breaker records it as a success.
- ``RunCancelledError``: the call was abandoned; the breaker is left unchanged.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import TypeVar

from ingestion.cancellation import CancellationToken
from ingestion.errors import (
    CircuitOpenError,
    PermanentUpstreamError,
    RetryExhaustedError,
    TransientUpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Exponential backoff retry for transient upstream failures.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_initial_seconds: float = 0.5,
        backoff_multiplier: float = 2.0,
        jitter_seconds: float = 0.25,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.max_retries = max(0, max_retries)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_multiplier = max(1.0, backoff_multiplier)
        self._jitter_seconds = max(0.0, jitter_seconds)
        self._random_fn = random_fn

    def backoff_seconds(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt + 1`` (``attempt`` is zero-based).
        """

        base = self._backoff_initial_seconds * (self._backoff_multiplier**attempt)
        return base + self._random_fn() * self._jitter_seconds

    def execute(
        self,
        operation: Callable[[], T],
        *,
        cancel_token: CancellationToken | None = None,
        description: str = "upstream call",
    ) -> T:
        token = cancel_token or CancellationToken()
        total_attempts = 1 + self.max_retries
        last_error: TransientUpstreamError | None = None

        for attempt in range(total_attempts):
            token.raise_if_cancelled()
            try:
                result = operation()
                if attempt > 0:
                    logger.info(
                        "Upstream call succeeded after retries call=%s retries=%s",
                        description,
                        attempt,
                    )
                return result
            except TransientUpstreamError as exc:
                last_error = exc

            if attempt >= self.max_retries:
                break

            wait_seconds = self.backoff_seconds(attempt)
            logger.warning(
                "Upstream call retry call=%s attempt=%s/%s wait_seconds=%.2f error=%s",
                description,
                attempt + 1,
                self.max_retries,
                wait_seconds,
                last_error,
            )
            if token.wait(wait_seconds):
                token.raise_if_cancelled()

        assert last_error is not None
        logger.error(
            "Upstream call exhausted retries call=%s attempts=%s error=%s",
            description,
            total_attempts,
            last_error,
        )
        raise RetryExhaustedError(total_attempts, last_error) from last_error


class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Failure-ratio circuit breaker over a rolling time window.

    Closed: calls pass; outcomes are sampled. Once at least
    ``minimum_throughput`` outcomes sit in the window and the failure ratio
    reaches ``failure_ratio`` the breaker opens.
    Open: calls fail fast for ``break_duration_seconds``.
    Half-open: exactly one trial call is admitted; its outcome closes or
    re-opens the breaker.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_ratio: float = 0.5,
        minimum_throughput: int = 5,
        sampling_window_seconds: float = 30.0,
        break_duration_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_ratio = min(1.0, max(0.0, failure_ratio))
        self._minimum_throughput = max(1, minimum_throughput)
        self._sampling_window_seconds = max(0.0, sampling_window_seconds)
        self._break_duration_seconds = max(0.0, break_duration_seconds)
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._samples: deque[tuple[float, bool]] = deque()
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def acquire(self) -> None:
        """
        Ask permission for one logical call. Raises ``CircuitOpenError`` when refused.
        """

        with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            now = self._clock()
            if self._state == CircuitState.OPEN:
                remaining = self._opened_at + self._break_duration_seconds - now
                if remaining > 0:
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is open; retry in {remaining:.1f}s."
                    )
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker half-open circuit=%s", self.name)

            if self._trial_in_flight:
                raise CircuitOpenError(f"Circuit '{self.name}' is half-open; trial call already in flight.")
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._close()
                return
            self._add_sample(failed=False)

    def record_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                return
            if self._state == CircuitState.OPEN:
                return
            self._add_sample(failed=True)
            if self._threshold_crossed():
                self._open()

    def release(self) -> None:
        """
        Return a permission without an outcome (the call was abandoned).
        """

        with self._lock:
            self._trial_in_flight = False

    def _add_sample(self, *, failed: bool) -> None:
        now = self._clock()
        self._samples.append((now, failed))
        horizon = now - self._sampling_window_seconds
        while self._samples and self._samples[0][0] < horizon:
            self._samples.popleft()

    def _threshold_crossed(self) -> bool:
        total = len(self._samples)
        if total < self._minimum_throughput:
            return False
        failures = sum(1 for _, failed in self._samples if failed)
        return failures / total >= self._failure_ratio

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._samples.clear()
        logger.error(
            "Circuit breaker opened circuit=%s break_seconds=%.1f",
            self.name,
            self._break_duration_seconds,
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        self._samples.clear()
        logger.info("Circuit breaker closed circuit=%s", self.name)


class ResilientCaller:
    """
    Runs one upstream operation with retry inside circuit-breaker protection.
    """

    def __init__(self, *, retry_policy: RetryPolicy, circuit_breaker: CircuitBreaker) -> None:
        self.retry_policy = retry_policy
        self.circuit_breaker = circuit_breaker

    def call(
        self,
        operation: Callable[[], T],
        *,
        cancel_token: CancellationToken | None = None,
        description: str = "upstream call",
    ) -> T:
        self.circuit_breaker.acquire()
        try:
            result = self.retry_policy.execute(
                operation,
                cancel_token=cancel_token,
                description=description,
            )
        except RetryExhaustedError:
            self.circuit_breaker.record_failure()
            raise
        except PermanentUpstreamError:
            self.circuit_breaker.record_success()
            raise
        except Exception:
            # Cancellation or an unexpected error says nothing about upstream health.
            self.circuit_breaker.release()
            raise

        self.circuit_breaker.record_success()
        return result
