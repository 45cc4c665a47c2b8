"""Synchronous in-process event bus.

Handlers run on the publisher's stack, in registration order, before
``publish`` returns. The bus does not queue, retry or catch: a handler that
raises propagates into the publisher, so every subscriber guards its own
work. The only check the bus performs itself is that the payload matches the
class registered for the topic.
"""

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from stagalgo.core.event_payloads import PAYLOAD_REGISTRY
from stagalgo.core.types import Event, EventType
from stagalgo.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[Event], Any]


class EventBus:
    """Topic-keyed pub/sub for communication between core components."""

    def __init__(self) -> None:
        self._subscribers: dict[EventType, list[Handler]] = defaultdict(list)
        self._published: dict[EventType, int] = defaultdict(int)

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler to an event type.

        Returns:
            A callable that removes this subscription. Calling it twice is a no-op.
        """
        self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        """Unsubscribe a handler from an event type."""
        handlers = self._subscribers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
            logger.debug(f"Unsubscribed handler {_handler_name(handler)} from {event_type.value}")

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to the current subscribers of its topic.

        Raises:
            TypeError: If the payload is not the class registered for the topic.
        """
        expected = PAYLOAD_REGISTRY.get(event.event_type)
        if expected is None or not isinstance(event.payload, expected):
            raise TypeError(
                f"{event.event_type.value} expects payload "
                f"{expected.__name__ if expected else '<unregistered>'}, "
                f"got {type(event.payload).__name__}"
            )

        self._published[event.event_type] += 1
        # Snapshot so that handlers may (un)subscribe while being dispatched.
        handlers = list(self._subscribers.get(event.event_type, ()))
        if not handlers:
            logger.debug(f"No subscribers for {event.event_type.value}")
            return

        logger.debug(f"Dispatching {event.event_type.value} to {len(handlers)} handlers")
        for handler in handlers:
            handler(event)

    def emit(self, event_type: EventType, payload: Any) -> None:
        """Wrap ``payload`` in an ``Event`` and publish it."""
        self.publish(Event(event_type=event_type, payload=payload))

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, ()))

    def published_count(self, event_type: EventType) -> int:
        return self._published.get(event_type, 0)

    def clear(self) -> None:
        """Remove every subscription."""
        self._subscribers.clear()
        logger.debug("Event bus cleared")


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or getattr(handler, "__name__", repr(handler))
