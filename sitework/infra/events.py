from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable

from sqlmodel import Session

from sitework.domain.models import EventEnvelope, EventRecord

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def record(self, session: Session, event: EventEnvelope) -> None:
        """Stage ``event`` in ``session``; the caller owns the commit."""
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                organization_id=event.organization_id,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
        )

    def dispatch(self, event: EventEnvelope) -> None:
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event subscriber failed for %s (%s)", event.event_type, event.event_id)


event_bus = EventBus()
