"""
Cancellation and completion primitives shared by the CLI lifecycle and log sinks.

:class:`RootContext` is created once per process invocation and cancelled when
the command tree finishes. Background workers observe it to know when to stop.
:class:`SignalHandle` is the reverse channel: a one-shot marker a worker closes
once its asynchronous work has fully finished.
"""

from __future__ import annotations

import threading
from typing import Optional


class RootContext:
    """Cancellable root context. Cancellation is one-directional."""

    def __init__(self) -> None:
        self._done = threading.Event()

    def cancel(self) -> None:
        """Cancel the context. Calling it again is a no-op."""

        self._done.set()

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the context is cancelled or ``timeout`` elapses.

        Returns ``True`` when the context has been cancelled.
        """

        return self._done.wait(timeout)


class SignalHandle:
    """
    One-shot completion marker.

    The handle starts open and is closed exactly once. Closing it twice is a
    programming error and raises :class:`RuntimeError`.
    """

    def __init__(self) -> None:
        self._closed = threading.Event()
        self._lock = threading.Lock()

    @classmethod
    def closed_handle(cls) -> "SignalHandle":
        """Return a handle that is already closed (no async work to await)."""

        handle = cls()
        handle.close()
        return handle

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                raise RuntimeError("signal handle already closed")
            self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the handle is closed.

        Without ``timeout`` the wait is unbounded. Returns ``True`` once closed.
        """

        return self._closed.wait(timeout)
