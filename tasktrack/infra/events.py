from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from sqlmodel import Session

from tasktrack.domain.models import EventEnvelope, EventRecord

EventHandler = Callable[[EventEnvelope], None]

logger = structlog.get_logger(__name__)


class EventBus:
    """Domain events: stored with the write that caused them, then handed to
    in-process handlers once that write has committed.

    Handlers subscribe to an event type or to ``"*"`` for every event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def build(
        self,
        event_type: str,
        company_id: str,
        payload: dict[str, Any],
        actor_id: str | None = None,
    ) -> EventEnvelope:
        return EventEnvelope(event_type=event_type, company_id=company_id, actor_id=actor_id, payload=payload)

    def record(self, event: EventEnvelope, session: Session) -> None:
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                company_id=event.company_id,
                ts=event.ts,
                actor_id=event.actor_id,
                payload=event.payload,
            )
        )

    def notify(self, event: EventEnvelope) -> None:
        for handler in [*self._handlers.get(event.event_type, []), *self._handlers.get("*", [])]:
            handler(event)


def log_event(event: EventEnvelope) -> None:
    logger.info(
        "domain_event",
        event_type=event.event_type,
        event_id=event.event_id,
        company_id=event.company_id,
        actor_id=event.actor_id,
    )


event_bus = EventBus()
