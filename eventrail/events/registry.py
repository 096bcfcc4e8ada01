"""Per-type handler registry with copy-on-write snapshots."""

import logging
from typing import Awaitable, Callable

from eventrail.events.models import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class HandlerRegistry:
    """event type -> ordered handlers.

    Each mutation replaces the stored tuple, so a snapshot taken for a dispatch is never
    changed by a concurrent subscribe/unsubscribe.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[EventHandler, ...]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type] = (*self._handlers.get(event_type, ()), handler)
        logger.info("Event handler registered for %s", event_type)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Remove the first matching handler. Returns False if it was not registered."""
        current = self._handlers.get(event_type, ())
        for index, registered in enumerate(current):
            if registered == handler:
                remaining = current[:index] + current[index + 1 :]
                if remaining:
                    self._handlers[event_type] = remaining
                else:
                    del self._handlers[event_type]
                logger.info("Event handler unregistered for %s", event_type)
                return True
        return False

    def snapshot(self, event_type: str) -> tuple[EventHandler, ...]:
        return self._handlers.get(event_type, ())

    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def __len__(self) -> int:
        return sum(len(h) for h in self._handlers.values())
