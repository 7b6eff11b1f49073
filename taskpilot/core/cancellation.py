"""Cooperative cancellation, pause and interrupt signals.

A CancellationToken is threaded through every suspending call and checked
before and after each one. The PauseGate suspends progress between turns
without losing transcript state.
"""

import logging
import threading
from collections.abc import Callable

from taskpilot.core.errors import CancellationRequested

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared cancellation signal for one task run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationRequested("Task cancelled by user")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback when cancelled (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class PauseGate:
    """Interactive pause/resume gate honored at every cancellation checkpoint."""

    POLL_INTERVAL = 0.1

    def __init__(self) -> None:
        self._running = threading.Event()
        self._running.set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def wait_if_paused(self, cancel_token: CancellationToken | None = None) -> None:
        """Block while paused. Returns early if the token is cancelled."""
        while not self._running.wait(self.POLL_INTERVAL):
            if cancel_token is not None and cancel_token.is_cancelled:
                return


class InterruptSignal:
    """Request to ask the user for input at the next loop checkpoint."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def interrupt(self) -> None:
        self._event.set()

    def consume(self) -> bool:
        """Return True once per interrupt request."""
        if self._event.is_set():
            self._event.clear()
            return True
        return False
