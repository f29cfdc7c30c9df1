from __future__ import annotations

from logging import getLogger
from typing import Callable, Generic, TypeVar

logger = getLogger(__name__)

F = TypeVar("F", bound=Callable[..., None])


class Listeners(Generic[F]):
    """
    Ordered list of callbacks, invoked in registration order.

    Dispatch iterates over a snapshot, so a listener may (un)register itself or
    others while being called; the change applies from the next dispatch on.
    A failing listener is logged and does not stop the remaining ones.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: list[F] = []

    def add(self, callback: F) -> None:
        self._callbacks.append(callback)

    def remove(self, callback: F) -> None:
        """Remove one registration of callback, unknown callbacks are ignored."""
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)

    def __call__(self, *args) -> None:
        for callback in tuple(self._callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.exception("[LISTENERS] %s listener %r crashed: %r", self._name, callback, e)
