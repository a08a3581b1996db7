"""Single-resolution latch."""

from __future__ import annotations

import threading
from typing import Generic, TypeVar, cast

__all__ = ["Latch"]

T = TypeVar("T")


class Latch(Generic[T]):
    """A value that is set once and observed by any number of waiters.

    Only the first `trigger` counts; later calls are ignored.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._value: T | None = None

    def trigger(self, value: T) -> bool:
        """Resolve the latch. Returns False if it was already resolved."""

        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> T:
        if not self._event.wait(timeout):
            raise TimeoutError("latch was not triggered in time")
        return cast(T, self._value)

    @property
    def triggered(self) -> bool:
        return self._event.is_set()
