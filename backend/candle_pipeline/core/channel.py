"""Listener Channel

Minimal publish/subscribe primitive used for candle update events and
transport fan-out.
"""
from typing import Callable, Generic, List, TypeVar

from candle_pipeline.logger import logger


ListenerT = TypeVar("ListenerT", bound=Callable[..., None])


class ListenerChannel(Generic[ListenerT]):
    """Ordered observer list with explicit unsubscribe handles.

    ``publish`` iterates over a snapshot, so listeners may unsubscribe
    themselves (or others) during dispatch. A listener that raises is
    logged and skipped; the remaining listeners still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[ListenerT] = []

    def subscribe(self, listener: ListenerT) -> Callable[[], None]:
        """Register ``listener`` and return a handle that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass  # already removed

        return unsubscribe

    def publish(self, *args) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception(f"Error in {self.name} listener {listener!r}")

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
