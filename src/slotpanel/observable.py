"""Minimal observable values and signals.

These replace a GUI framework's property/notify machinery: an
:class:`Observable` holds a value and tells subscribers when it changes, and
a :class:`Signal` fans one call out to every connected callback.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class Signal:
    """Ordered list of callbacks invoked with the same arguments."""

    def __init__(self, name: str) -> None:
        """Create an empty signal called *name*."""
        self.name = name
        self._subscribers: list[Callable[..., object]] = []
        self._lock = threading.Lock()

    def connect(self, callback: Callable[..., object]) -> Callable[[], None]:
        """Subscribe *callback*; return a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _disconnect() -> None:
            self.disconnect(callback)

        return _disconnect

    def disconnect(self, callback: Callable[..., object]) -> None:
        """Remove *callback* if it is subscribed."""
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                return

    def emit(self, *args: object) -> None:
        """Invoke every subscriber in connection order."""
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(*args)

    def __len__(self) -> int:
        """Return the number of subscribers."""
        return len(self._subscribers)


class Observable(Generic[T]):
    """A value holder that emits ``changed`` when its value is replaced."""

    def __init__(self, name: str, initial: T) -> None:
        """Create the observable with an *initial* value."""
        self.name = name
        self._value = initial
        self.changed = Signal(f"{name}Changed")

    @property
    def value(self) -> T:
        """Return the current value."""
        return self._value

    def set(self, value: T, *, force: bool = False) -> bool:
        """Store *value*; notify subscribers when it differs (or *force*)."""
        if not force and value == self._value:
            return False
        self._value = value
        LOGGER.debug("%s -> %r", self.name, value)
        self.changed.emit(value)
        return True

    def subscribe(self, callback: Callable[[T], object]) -> Callable[[], None]:
        """Shorthand for ``changed.connect``."""
        return self.changed.connect(callback)


__all__ = ["Observable", "Signal"]
