"""Run-wide cancellation token and signal wiring."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class CancelToken:
    """Shared stop flag observed by agent runs, backoff sleeps and the worker pool."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.warning("Cancellation requested: %s", reason)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancellation interrupted the wait."""

        return self._event.wait(timeout=max(0.0, seconds))


@contextmanager
def cancel_on_signals(token: CancelToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the duration of a run."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        token.cancel(reason=f"received {name}")

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
