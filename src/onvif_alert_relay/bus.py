"""In-process fan-out of normalized events.

Handlers are registered per category or as wildcards.  Delivery iterates a
snapshot of the registry, so handlers may (un)register during dispatch.
A failing handler is logged and does not affect the others.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from onvif_alert_relay.models import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], object]


class EventBus:
    """Category → ordered handler set, plus a wildcard list."""

    def __init__(self) -> None:
        # dicts keep insertion order and deduplicate handlers
        self._handlers: dict[str, dict[EventHandler, None]] = {}
        self._wildcard: dict[EventHandler, None] = {}

    def subscribe(self, category: str, handler: EventHandler) -> None:
        """Call *handler* for every event of *category*."""
        self._handlers.setdefault(category, {})[handler] = None

    def subscribe_all(self, handler: EventHandler) -> None:
        """Call *handler* for every event."""
        self._wildcard[handler] = None

    def unsubscribe(self, handler: EventHandler, category: Optional[str] = None) -> None:
        """Remove *handler* from *category*, or from everywhere when omitted."""
        if category is None:
            self._wildcard.pop(handler, None)
            for handlers in self._handlers.values():
                handlers.pop(handler, None)
        else:
            self._handlers.get(category, {}).pop(handler, None)

    def publish(self, event: Event) -> int:
        """Deliver *event*; returns the number of handlers invoked."""
        snapshot = list(self._wildcard) + list(self._handlers.get(event.category, ()))
        for handler in snapshot:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler %r failed for %s event %s",
                    handler, event.category, event.id,
                )
        return len(snapshot)
