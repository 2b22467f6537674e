"""
ingestion/cancellation.py

Per-run cancellation signal shared by the coordinator, walker and resilience layer.
"""

from __future__ import annotations

import threading

from ingestion.errors import RunCancelledError

DEFAULT_CANCEL_REASON = "Ingestion run was cancelled."


class CancellationToken:
    """
    Thread-safe, one-way cancellation flag.

    Sleeps inside a run go through ``wait`` so that a cancel wakes them
    immediately instead of waiting out a backoff or the inter-page delay.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason or DEFAULT_CANCEL_REASON)

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``. Returns True if cancelled before or during the wait.
        """

        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)
