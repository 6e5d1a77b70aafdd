from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldops import events
from fieldops.context import get_correlation_id
from fieldops.events import InternalEvent, event_bus
from fieldops.lifecycle.models import HistoryImmutableError, StatusHistoryRecord
from fieldops.metrics import observe_status_transition


logger = logging.getLogger("fieldops.lifecycle.history")

STATUS_CHANGED_EVENT = "fieldops.status.changed"

__all__ = [
    "HistoryImmutableError",
    "STATUS_CHANGED_EVENT",
    "TrackedEntity",
    "list_history",
    "record_transition",
]


class TrackedEntity(Protocol):
    entity_type: str
    id: uuid.UUID
    status: str


def record_transition(
    session: Session,
    entity: TrackedEntity,
    *,
    from_status: str | None,
    to_status: str,
    changed_at: datetime,
    changed_by: str | None = None,
    notes: str | None = None,
) -> tuple[StatusHistoryRecord, dict[str, Any]]:
    """Append one history row in the caller's transaction and queue its domain event.

    Returns the pending row and the queued envelope so a caller can withdraw both
    if the transition is superseded before the flush.
    """
    correlation_id = get_correlation_id()
    record = StatusHistoryRecord(
        entity_type=entity.entity_type,
        entity_id=entity.id,
        from_status=from_status,
        to_status=to_status,
        changed_at=changed_at,
        changed_by=changed_by,
        notes=notes,
        correlation_id=correlation_id,
    )
    session.add(record)

    envelope: dict[str, Any] = {
        "event_type": STATUS_CHANGED_EVENT,
        "entity_type": entity.entity_type,
        "entity_id": str(entity.id),
        "from_status": from_status,
        "to_status": to_status,
        "changed_at": changed_at.isoformat(),
        "changed_by": changed_by,
        "correlation_id": correlation_id,
    }
    events.publish_after_commit(session, envelope)
    return record, envelope


def list_history(session: Session, entity_type: str, entity_id: uuid.UUID) -> list[StatusHistoryRecord]:
    """Transitions for one entity in commit order.

    ``changed_at`` is the writer's clock, read before the row lock was taken,
    so it can run backwards between consecutive rows; the id cannot.
    """
    stmt = (
        select(StatusHistoryRecord)
        .where(
            StatusHistoryRecord.entity_type == entity_type,
            StatusHistoryRecord.entity_id == entity_id,
        )
        .order_by(StatusHistoryRecord.id.asc())
    )
    return list(session.scalars(stmt))


def _on_status_changed(event: InternalEvent) -> None:
    payload = event.payload
    observe_status_transition(str(payload.get("entity_type")), str(payload.get("to_status")))
    logger.info(
        "status.changed",
        extra={
            "entity_type": payload.get("entity_type"),
            "entity_id": payload.get("entity_id"),
            "from_status": payload.get("from_status"),
            "to_status": payload.get("to_status"),
            "changed_by": payload.get("changed_by"),
        },
    )


event_bus.subscribe(STATUS_CHANGED_EVENT, _on_status_changed)
