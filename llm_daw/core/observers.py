"""Observer registry with idempotent unsubscribe handles."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class ObserverRegistry(Generic[T]):
    """Ordered list of callbacks that all receive the same payload.

    ``subscribe`` returns a handle that removes the callback; calling the
    handle more than once is harmless.  Emitting iterates over a copy, so a
    callback may unsubscribe itself (or others) while being notified.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._callbacks: list[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, payload: T) -> None:
        for callback in list(self._callbacks):
            callback(payload)

    def emit_safely(self, payload: T) -> None:
        """Emit, logging and skipping subscribers that raise."""
        for callback in list(self._callbacks):
            try:
                callback(payload)
            except Exception:
                log.exception("Subscriber of %s failed", self._name or "registry")

    def clear(self) -> None:
        self._callbacks.clear()
