from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fieldops import events
from fieldops.context import reset_correlation_id, set_correlation_id
from fieldops.lifecycle.gate import apply_derivation
from fieldops.lifecycle.history import STATUS_CHANGED_EVENT, HistoryImmutableError, list_history
from fieldops.lifecycle.models import Job, ServiceRequest, StatusHistoryRecord
from fieldops.lifecycle.unit_of_work import bound_write_context, run_in_transaction


NOW = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)


def _add(session: Session, entity: ServiceRequest | Job, now: datetime = NOW) -> uuid.UUID:
    def work(db: Session) -> uuid.UUID:
        db.add(entity)
        db.flush()
        return entity.id

    return run_in_transaction(session, work, now=now, changed_by="dispatcher-1")


def _change(session: Session, model: type, entity_id: uuid.UUID, now: datetime = NOW, **facts: object) -> None:
    def work(db: Session) -> None:
        entity = db.get(model, entity_id, with_for_update=True)
        for field, value in facts.items():
            setattr(entity, field, value)
        db.flush()

    run_in_transaction(session, work, now=now, changed_by="dispatcher-1")


def _history_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(StatusHistoryRecord)) or 0


def test_insert_sets_initial_status_without_history(db_session: Session) -> None:
    request_id = _add(
        db_session,
        ServiceRequest(request_number="REQ-1", assessment_scheduled_at=NOW + timedelta(days=2)),
    )

    request = db_session.get(ServiceRequest, request_id)
    assert request is not None
    assert request.status == "assessment_scheduled"
    assert request.status_changed_at is not None
    assert request.row_version == 1
    assert _history_count(db_session) == 0


def test_caller_supplied_status_is_replaced_on_insert(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1", status="converted"))

    assert db_session.get(ServiceRequest, request_id).status == "pending"


def test_fact_change_records_exactly_one_transition(db_session: Session) -> None:
    request_id = _add(
        db_session,
        ServiceRequest(request_number="REQ-1", assessment_scheduled_at=NOW + timedelta(days=2)),
    )
    later = NOW + timedelta(hours=1)

    _change(db_session, ServiceRequest, request_id, now=later, assessment_completed_at=later)

    request = db_session.get(ServiceRequest, request_id)
    assert request.status == "assessment_completed"
    rows = list_history(db_session, "request", request_id)
    assert [(row.from_status, row.to_status) for row in rows] == [("assessment_scheduled", "assessment_completed")]
    assert rows[0].changed_by == "dispatcher-1"
    assert rows[0].changed_at.replace(tzinfo=timezone.utc) == later


def test_write_without_status_change_leaves_status_untouched(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))
    first_changed_at = db_session.get(ServiceRequest, request_id).status_changed_at

    _change(db_session, ServiceRequest, request_id, now=NOW + timedelta(days=1), description="gate code 4412")

    request = db_session.get(ServiceRequest, request_id)
    assert request.status == "pending"
    assert request.status_changed_at == first_changed_at
    assert request.row_version == 2
    assert _history_count(db_session) == 0


def test_caller_supplied_status_is_replaced_on_update(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))

    _change(db_session, ServiceRequest, request_id, status="archived")

    assert db_session.get(ServiceRequest, request_id).status == "pending"
    assert _history_count(db_session) == 0


def test_history_is_complete_across_job_milestones(db_session: Session) -> None:
    job_id = _add(db_session, Job(job_number="JOB-1"))
    steps = [
        {"scheduled_date": NOW.date(), "assigned_crew_id": uuid.uuid4()},
        {"ready_for_yard_at": NOW},
        {"picking_started_at": NOW},
        {"staging_completed_at": NOW},
        {"loaded_at": NOW},
        {"work_started_at": NOW},
        {"assigned_crew_id": uuid.uuid4()},
        {"work_completed_at": NOW},
    ]
    for offset, facts in enumerate(steps, start=1):
        _change(db_session, Job, job_id, now=NOW + timedelta(minutes=offset), **facts)

    rows = list_history(db_session, "job", job_id)
    statuses = ["won", "scheduled", "ready_for_yard", "picking", "staged", "loaded", "in_progress", "completed"]
    assert len(rows) == len(statuses) - 1
    assert [row.from_status for row in rows] == statuses[:-1]
    assert [row.to_status for row in rows] == statuses[1:]
    assert db_session.get(Job, job_id).status == "completed"


def test_explicit_gate_call_before_flush_is_not_recorded_twice(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))

    def work(db: Session) -> None:
        request = db.get(ServiceRequest, request_id)
        request.archived_at = NOW
        first = apply_derivation(db, request, now=NOW)
        second = apply_derivation(db, request, now=NOW)
        assert first is not None and first == second
        db.flush()

    run_in_transaction(db_session, work, now=NOW)

    assert [row.to_status for row in list_history(db_session, "request", request_id)] == ["archived"]


def test_fact_reverted_before_flush_records_nothing(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))
    original_changed_at = db_session.get(ServiceRequest, request_id).status_changed_at

    def work(db: Session) -> None:
        request = db.get(ServiceRequest, request_id)
        request.archived_at = NOW
        assert apply_derivation(db, request, now=NOW) is not None
        request.archived_at = None
        db.flush()

    run_in_transaction(db_session, work, now=NOW + timedelta(hours=1))

    request = db_session.get(ServiceRequest, request_id)
    assert request.status == "pending"
    assert request.status_changed_at == original_changed_at
    assert _history_count(db_session) == 0
    assert events.published_events == []


def test_status_change_event_is_published_after_commit_only(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))

    with bound_write_context(db_session, now=NOW):
        request = db_session.get(ServiceRequest, request_id)
        request.archived_at = NOW
        db_session.flush()
        assert events.published_events == []
        db_session.rollback()

    assert events.published_events == []
    assert _history_count(db_session) == 0

    _change(db_session, ServiceRequest, request_id, archived_at=NOW)
    assert len(events.published_events) == 1
    envelope = events.published_events[0]
    assert envelope["event_type"] == STATUS_CHANGED_EVENT
    assert envelope["entity_id"] == str(request_id)
    assert (envelope["from_status"], envelope["to_status"]) == ("pending", "archived")


def test_status_change_is_logged_with_correlation_id(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="fieldops.lifecycle.history")
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))

    token = set_correlation_id("corr-gate-1")
    try:
        _change(db_session, ServiceRequest, request_id, archived_at=NOW)
    finally:
        reset_correlation_id(token)

    records = [record for record in caplog.records if record.getMessage() == "status.changed"]
    assert len(records) == 1
    assert records[0].entity_type == "request"
    assert records[0].to_status == "archived"
    assert list_history(db_session, "request", request_id)[0].correlation_id == "corr-gate-1"


def test_history_rows_cannot_be_rewritten(db_session: Session) -> None:
    request_id = _add(db_session, ServiceRequest(request_number="REQ-1"))
    _change(db_session, ServiceRequest, request_id, archived_at=NOW)
    row = list_history(db_session, "request", request_id)[0]

    row.notes = "tampered"
    with pytest.raises(HistoryImmutableError):
        db_session.flush()
    db_session.rollback()

    row = list_history(db_session, "request", request_id)[0]
    db_session.delete(row)
    with pytest.raises(HistoryImmutableError):
        db_session.flush()
    db_session.rollback()

    assert _history_count(db_session) == 1


def test_history_follows_commit_order_when_clocks_disagree(db_session: Session) -> None:
    request_id = _add(
        db_session,
        ServiceRequest(request_number="REQ-1", assessment_scheduled_at=NOW + timedelta(days=2)),
    )

    # The later commit carries the earlier clock, as when a writer waits on the row lock.
    _change(db_session, ServiceRequest, request_id, now=NOW + timedelta(seconds=2), assessment_completed_at=NOW)
    _change(db_session, ServiceRequest, request_id, now=NOW + timedelta(seconds=1), archived_at=NOW)

    rows = list_history(db_session, "request", request_id)
    assert [(row.from_status, row.to_status) for row in rows] == [
        ("assessment_scheduled", "assessment_completed"),
        ("assessment_completed", "archived"),
    ]
    assert rows[0].changed_at.replace(tzinfo=timezone.utc) > rows[1].changed_at.replace(tzinfo=timezone.utc)
