"""Observer registry for events raised to the host application.

Events are delivered in the order emit() is awaited, which is the order
the underlying operations complete. Observers may be plain callables or
coroutine functions. An observer that raises is logged and skipped; the
remaining observers still receive the event.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Observer = Callable[[Any], Any]


class EventHub:
    """Named-event observer registry."""

    def __init__(self) -> None:
        self._observers: dict[str, list[Observer]] = {}

    def subscribe(self, event: str, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.setdefault(event, []).append(observer)
        return lambda: self.unsubscribe(event, observer)

    def unsubscribe(self, event: str, observer: Observer) -> bool:
        observers = self._observers.get(event, [])
        if observer in observers:
            observers.remove(observer)
            return True
        return False

    def observers(self, event: str) -> list[Observer]:
        return list(self._observers.get(event, []))

    async def emit(self, event: str, payload: Any) -> int:
        """Deliver payload to every observer of event. Returns the delivery count."""
        delivered = 0
        for observer in self.observers(event):
            try:
                result = observer(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("Observer %r failed on %s", observer, event)
        return delivered
