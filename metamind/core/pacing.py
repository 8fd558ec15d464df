"""Cancellation token and interruptible pacing delay."""

from __future__ import annotations

import threading


class CancellationToken:
    """Shared abort signal for one run.

    ``wait()`` sleeps until the timeout elapses or ``cancel()`` is called,
    whichever comes first.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)
