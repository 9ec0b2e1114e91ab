import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from ..shared.constants import SUBSCRIBER_WARN_THRESHOLD
from .models import EventKind, MessageReceived, NormalizedEvent, ReadMarked

__all__ = ("EventBus", "Handler")

Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """In-process publish/subscribe channel for normalized events.

    Handlers run in registration order within a single ``publish`` call.
    Coroutine handlers are awaited; a failing handler is logged and does not
    stop delivery to the rest. Events published with no subscriber are
    dropped.
    """

    def __init__(self, *, warn_threshold: int = SUBSCRIBER_WARN_THRESHOLD):
        self.warn_threshold = warn_threshold
        self.event_handlers: dict[EventKind, list[Handler]] = {}

    def subscribe(self, kind: EventKind | str, handler: Handler) -> Handler:
        kind = EventKind(kind)
        handlers = self.event_handlers.setdefault(kind, [])
        handlers.append(handler)
        if len(handlers) > self.warn_threshold:
            logger.warning(f"High subscriber count for {kind.value}: {len(handlers)}")
        return handler

    def unsubscribe(self, kind: EventKind | str, handler: Handler) -> bool:
        handlers = self.event_handlers.get(EventKind(kind))
        if not handlers:
            return False
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        return True

    def on_dm_received(
        self, handler: Callable[[MessageReceived], Awaitable[None] | None]
    ) -> Handler:
        return self.subscribe(EventKind.DM_RECEIVED, handler)

    def on_dm_read(
        self, handler: Callable[[ReadMarked], Awaitable[None] | None]
    ) -> Handler:
        return self.subscribe(EventKind.DM_READ, handler)

    def subscriber_count(self, kind: EventKind | str) -> int:
        return len(self.event_handlers.get(EventKind(kind), []))

    async def publish(self, event: NormalizedEvent) -> int:
        """Deliver ``event`` to its subscribers; returns how many succeeded."""
        handlers = list(self.event_handlers.get(event.kind, []))
        if not handlers:
            logger.debug(f"No subscribers for {event.kind.value}; event dropped")
            return 0
        delivered = 0
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Event handler failed ({event.kind.value}): {e}")
        return delivered
