"""Derivation gate.

Every flush re-derives the status of each new or modified tracked entity from
its facts. A stored status that already matches is left alone; a different one
is overwritten, stamped with ``status_changed_at`` and, for rows that already
exist, recorded once in the status history within the same flush.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from fieldops import events
from fieldops.core.config import get_settings
from fieldops.lifecycle.derivation import DerivationPolicy, derive_status
from fieldops.lifecycle.history import record_transition
from fieldops.lifecycle.models import StatusHistoryRecord, TrackedEntityMixin
from fieldops.lifecycle.unit_of_work import get_write_context


_UNFLUSHED_KEY = "fieldops.unflushed_transitions"


@dataclass(frozen=True, slots=True)
class StatusTransition:
    entity_type: str
    entity_id: uuid.UUID
    from_status: str | None
    to_status: str
    changed_at: datetime


@dataclass(slots=True)
class _Unflushed:
    transition: StatusTransition
    record: StatusHistoryRecord
    envelope: dict[str, Any]
    previous_changed_at: datetime | None


def current_policy() -> DerivationPolicy:
    settings = get_settings()
    return DerivationPolicy.from_settings(
        quote_follow_up_days=settings.quote_follow_up_days,
        business_timezone=settings.business_timezone,
    )


def stored_status(entity: TrackedEntityMixin) -> str | None:
    """Status as last written to the database, ignoring unflushed assignments."""
    state = inspect(entity)
    if not state.persistent:
        return None
    history = get_history(entity, "status")
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def apply_derivation(
    session: Session,
    entity: TrackedEntityMixin,
    *,
    now: datetime,
    changed_by: str | None = None,
    notes: str | None = None,
    policy: DerivationPolicy | None = None,
) -> StatusTransition | None:
    entity.refresh_derived_fields()
    candidate = derive_status(entity.entity_type, entity, now, policy or current_policy())
    stored = stored_status(entity)
    persistent = inspect(entity).persistent

    unflushed: dict[tuple[str, Any], _Unflushed] = session.info.setdefault(_UNFLUSHED_KEY, {})
    key = (entity.entity_type, entity.id)
    prior = unflushed.pop(key, None) if persistent else None
    if prior is not None:
        if prior.transition.from_status == stored and prior.transition.to_status == candidate:
            unflushed[key] = prior
            return prior.transition
        # Facts moved again before the flush: the earlier candidate never happened.
        session.expunge(prior.record)
        events.withdraw_pending(session, prior.envelope)
        entity.status_changed_at = prior.previous_changed_at

    if entity.status != candidate:
        entity.status = candidate
    if stored == candidate:
        return None

    previous_changed_at = entity.status_changed_at
    entity.status_changed_at = now
    if not persistent:
        return None

    transition = StatusTransition(
        entity_type=entity.entity_type,
        entity_id=entity.id,
        from_status=stored,
        to_status=candidate,
        changed_at=now,
    )
    record, envelope = record_transition(
        session,
        entity,
        from_status=stored,
        to_status=candidate,
        changed_at=now,
        changed_by=changed_by,
        notes=notes,
    )
    unflushed[key] = _Unflushed(transition, record, envelope, previous_changed_at)
    return transition


def rederive(session: Session, entity: TrackedEntityMixin) -> StatusTransition | None:
    """Re-run the gate for one persistent row and flush it.

    Touches ``updated_at`` so the row is part of the flush even when none of its
    facts changed, which is how link writes and time-based refreshes re-enter
    the gate.
    """
    context = get_write_context(session)
    entity.updated_at = context.now
    transition = apply_derivation(
        session,
        entity,
        now=context.now,
        changed_by=context.changed_by,
        notes=context.notes,
    )
    session.flush()
    return transition


@event.listens_for(Session, "before_flush")
def _derive_on_flush(session: Session, flush_context: Any, instances: Any) -> None:
    tracked = [
        obj
        for obj in (*session.new, *session.dirty)
        if isinstance(obj, TrackedEntityMixin) and obj not in session.deleted
    ]
    if not tracked:
        return
    context = get_write_context(session)
    policy = current_policy()
    for entity in tracked:
        apply_derivation(
            session,
            entity,
            now=context.now,
            changed_by=context.changed_by,
            notes=context.notes,
            policy=policy,
        )


@event.listens_for(Session, "after_flush")
def _forget_flushed(session: Session, flush_context: Any) -> None:
    session.info.pop(_UNFLUSHED_KEY, None)


@event.listens_for(Session, "after_soft_rollback")
def _forget_rolled_back(session: Session, previous_transaction: Any) -> None:
    session.info.pop(_UNFLUSHED_KEY, None)
