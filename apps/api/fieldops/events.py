from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from fieldops.context import get_correlation_id

_PENDING_KEY = "fieldops.pending_events"

published_events: list[dict[str, Any]] = []


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        dispatched = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(dispatched)


event_bus = InProcessEventBus()


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def publish_after_commit(session: Session, envelope: dict[str, Any]) -> None:
    """Hold an event until the surrounding transaction commits; a rollback discards it."""
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    session.info.setdefault(_PENDING_KEY, []).append(envelope)


def pending_count(session: Session) -> int:
    return len(session.info.get(_PENDING_KEY, []))


def withdraw_pending(session: Session, envelope: dict[str, Any]) -> None:
    pending = session.info.get(_PENDING_KEY, [])
    for index, queued in enumerate(pending):
        if queued is envelope:
            del pending[index]
            return


def discard_pending_since(session: Session, mark: int) -> None:
    pending = session.info.get(_PENDING_KEY)
    if pending:
        del pending[mark:]


@event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    for envelope in session.info.pop(_PENDING_KEY, []):
        publish(envelope)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)
