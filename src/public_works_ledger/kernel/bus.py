"""
In-process Event Bus

Simple synchronous pub/sub for domain events. Handlers run in the
publisher's thread; anything slow (like notification delivery) must hand
work off itself, as the notification dispatcher does.
"""

from collections import defaultdict
from typing import Callable

from public_works_ledger.kernel.events import DomainEvent
from public_works_ledger.kernel.logging import get_logger

logger = get_logger(__name__)


EventHandler = Callable[[DomainEvent], None]

# Subscribing to this key receives every event
ALL_EVENTS = "*"


class EventBus:
    """
    Synchronous in-process event bus

    A failing handler is logged and skipped; it never affects other
    handlers or the write that published the event.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler (many handlers may share an event type)

        Args:
            event_type: Event class name (e.g. "AlertIssued") or ALL_EVENTS
            handler: Callable receiving the event
        """
        self._handlers[event_type].append(handler)
        logger.debug(
            "Event handler registered",
            event_type=event_type,
            total_handlers=len(self._handlers[event_type]),
        )

    def publish(self, event: DomainEvent) -> None:
        """
        Publish an event to its handlers in registration order

        Args:
            event: Event to publish
        """
        handlers = self._handlers.get(event.event_type, []) + self._handlers.get(ALL_EVENTS, [])
        if not handlers:
            return

        logger.debug(
            "Publishing event",
            event_type=event.event_type,
            event_id=event.event_id,
            handler_count=len(handlers),
        )

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    error=str(e),
                    exc_info=True,
                )

    def publish_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def get_event_types(self) -> list[str]:
        """Event types with at least one handler"""
        return [k for k, v in self._handlers.items() if v]

    def clear(self) -> None:
        """Remove all handlers (useful for testing)"""
        self._handlers.clear()
