"""
Extension module registry.

Extensions register themselves at import time under the ``k6/x/`` namespace so
scripts can later resolve them by their full import path. The registry is an
append-only catalogue: entries are never replaced or removed for the life of
the process, and registering the same name twice is treated as a build-time
programming error rather than a runtime condition.

Use the module-level :func:`register_module` and :func:`get_module` helpers;
they operate on the single process-wide :class:`ModuleRegistry` instance.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional

from .logging import get_logger

EXTENSION_PREFIX = "k6/x/"

_logger = get_logger(__name__)


class RegistrationConflict(BaseException):
    """
    Raised when a module name is registered twice.

    Derives from :class:`BaseException` so ordinary ``except Exception``
    handlers do not swallow it; left unhandled it terminates the process.
    """

    def __init__(self, name: str) -> None:
        self.module_name = name
        super().__init__(f"module already registered: {name}")


class _ReadWriteLock:
    """Many concurrent readers or a single writer; waiting writers go first."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writing or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writing or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writing = True

    def release_write(self) -> None:
        with self._cond:
            self._writing = False
            self._cond.notify_all()


class ModuleRegistry:
    """
    Concurrent, append-only mapping of namespaced names to module handles.

    Parameters
    ----------
    prefix:
        Namespace prepended to names that do not already carry it.
    """

    def __init__(self, prefix: str = EXTENSION_PREFIX) -> None:
        self._prefix = prefix
        self._entries: Dict[str, object] = {}
        self._lock = _ReadWriteLock()

    @property
    def prefix(self) -> str:
        return self._prefix

    def normalise(self, name: str) -> str:
        """Return ``name`` with the namespace prefix applied."""

        if name.startswith(self._prefix):
            return name
        return f"{self._prefix}{name}"

    def lookup(self, name: str) -> Optional[object]:
        """Return the handle registered under ``name`` or ``None``."""

        self._lock.acquire_read()
        try:
            return self._entries.get(name)
        finally:
            self._lock.release_read()

    def register(self, name: str, handle: object) -> None:
        """
        Register ``handle`` under the normalised ``name``.

        Raises
        ------
        RegistrationConflict
            If the normalised name is already registered.
        """

        key = self.normalise(name)
        self._lock.acquire_write()
        try:
            if key in self._entries:
                raise RegistrationConflict(key)
            self._entries[key] = handle
        finally:
            self._lock.release_write()
        _logger.debug("Registered extension module", extra={"extension": key})

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        self._lock.acquire_read()
        try:
            return name in self._entries
        finally:
            self._lock.release_read()

    def __len__(self) -> int:
        self._lock.acquire_read()
        try:
            return len(self._entries)
        finally:
            self._lock.release_read()


_registry = ModuleRegistry()


def get_module(name: str) -> Optional[object]:
    """Return the module registered under the full import path ``name``."""

    return _registry.lookup(name)


def register_module(name: str, handle: object) -> None:
    """
    Register ``handle`` as an extension module importable as ``k6/x/<name>``.

    Raises :class:`RegistrationConflict` if the name is already taken.
    """

    _registry.register(name, handle)
