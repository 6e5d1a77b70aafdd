from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from fieldops import events
from fieldops.lifecycle.derivation import DerivationClock
from fieldops.lifecycle.gate import current_policy, rederive
from fieldops.lifecycle.models import TRACKED_MODELS, Invoice, Quote, ServiceRequest, TrackedEntityMixin
from fieldops.lifecycle.unit_of_work import bound_write_context
from fieldops.metrics import observe_refresh_run
from fieldops.otel import get_tracer


logger = logging.getLogger("fieldops.lifecycle.refresher")
tracer = get_tracer("fieldops.lifecycle.refresher")

REFRESH_NOTES = "time-based refresh"
REDERIVE_NOTES = "re-derivation"

Target = tuple[type[TrackedEntityMixin], uuid.UUID]


@dataclass
class RefreshReport:
    examined: int = 0
    changed: list[tuple[str, uuid.UUID, str | None, str]] = field(default_factory=list)
    failed: list[tuple[str, uuid.UUID, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "changed": [
                {"entity_type": entity_type, "entity_id": str(entity_id), "old_status": old, "new_status": new}
                for entity_type, entity_id, old, new in self.changed
            ],
            "failed": [
                {"entity_type": entity_type, "entity_id": str(entity_id), "error": error}
                for entity_type, entity_id, error in self.failed
            ],
        }


def _ids(session: Session, stmt: Any) -> list[uuid.UUID]:
    return list(session.scalars(stmt))


def time_sensitive_targets(session: Session, clock: DerivationClock) -> list[Target]:
    """Rows whose status may have moved only because time passed."""
    requests = _ids(
        session,
        select(ServiceRequest.id).where(
            ServiceRequest.status.in_(("assessment_scheduled", "assessment_today")),
            ServiceRequest.assessment_scheduled_at.is_not(None),
            ServiceRequest.assessment_completed_at.is_(None),
            ServiceRequest.archived_at.is_(None),
            ServiceRequest.converted_to_quote_id.is_(None),
            ServiceRequest.converted_to_job_id.is_(None),
        ),
    )
    quotes = _ids(
        session,
        select(Quote.id).where(
            Quote.status == "sent",
            Quote.sent_at.is_not(None),
            or_(
                Quote.sent_at < clock.now - clock.policy.follow_up_after,
                Quote.valid_until < clock.today,
            ),
        ),
    )
    invoices = _ids(
        session,
        select(Invoice.id).where(
            Invoice.status == "sent",
            Invoice.due_date < clock.today,
            Invoice.balance_due > 0,
        ),
    )
    return [
        *((ServiceRequest, entity_id) for entity_id in requests),
        *((Quote, entity_id) for entity_id in quotes),
        *((Invoice, entity_id) for entity_id in invoices),
    ]


def _rederive_one(session: Session, model: type[TrackedEntityMixin], entity_id: uuid.UUID) -> tuple[str | None, str] | None:
    with session.begin_nested():
        entity = session.get(model, entity_id, with_for_update=True, populate_existing=True)
        if entity is None:
            return None
        transition = rederive(session, entity)
    if transition is None:
        return None
    return transition.from_status, transition.to_status


def _sweep(
    session: Session,
    targets: Iterable[Target],
    report: RefreshReport,
) -> None:
    for model, entity_id in targets:
        report.examined += 1
        mark = events.pending_count(session)
        try:
            outcome = _rederive_one(session, model, entity_id)
        except Exception as exc:
            events.discard_pending_since(session, mark)
            logger.exception(
                "refresh.entity_failed",
                extra={"entity_type": model.entity_type, "entity_id": str(entity_id), "error": str(exc)[:500]},
            )
            report.failed.append((model.entity_type, entity_id, str(exc)[:500]))
            continue
        if outcome is not None:
            report.changed.append((model.entity_type, entity_id, outcome[0], outcome[1]))


def _run(
    session: Session,
    *,
    kind: str,
    now: datetime | None,
    changed_by: str | None,
    notes: str,
    select_targets: Any,
) -> RefreshReport:
    report = RefreshReport()
    started = time.perf_counter()
    with tracer.start_as_current_span(f"fsm.{kind}") as span:
        try:
            with bound_write_context(session, now=now, changed_by=changed_by, notes=notes) as context:
                clock = DerivationClock.at(context.now, current_policy())
                _sweep(session, select_targets(session, clock), report)
                session.commit()
        except Exception:
            session.rollback()
            observe_refresh_run("error", time.perf_counter() - started)
            raise

        span.set_attribute("fsm.examined", report.examined)
        span.set_attribute("fsm.changed", len(report.changed))
        span.set_attribute("fsm.failed", len(report.failed))

    observe_refresh_run("partial" if report.failed else "success", time.perf_counter() - started)
    logger.info(
        "refresh.finished",
        extra={"examined": report.examined, "changed": len(report.changed), "failed": len(report.failed)},
    )
    return report


def refresh_time_based_statuses(
    session: Session,
    now: datetime | None = None,
    changed_by: str | None = None,
) -> RefreshReport:
    """Re-derive every row whose status depends on the passage of time.

    Each row is handled in its own savepoint; a failing row is reported and
    skipped while the rest of the sweep commits. A second run with the same
    ``now`` changes nothing.
    """
    return _run(
        session,
        kind="refresh",
        now=now,
        changed_by=changed_by,
        notes=REFRESH_NOTES,
        select_targets=time_sensitive_targets,
    )


def _all_targets(session: Session, clock: DerivationClock) -> list[Target]:
    targets: list[Target] = []
    for model in TRACKED_MODELS.values():
        targets.extend((model, entity_id) for entity_id in _ids(session, select(model.id).order_by(model.created_at)))
    return targets


def rederive_all(
    session: Session,
    now: datetime | None = None,
    changed_by: str | None = None,
) -> RefreshReport:
    return _run(
        session,
        kind="rederive",
        now=now,
        changed_by=changed_by,
        notes=REDERIVE_NOTES,
        select_targets=_all_targets,
    )
