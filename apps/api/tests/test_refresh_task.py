from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session, sessionmaker

from fieldops.core.celery_app import celery_app
from fieldops.lifecycle import tasks
from fieldops.lifecycle.history import list_history
from fieldops.lifecycle.models import Quote
from fieldops.lifecycle.unit_of_work import run_in_transaction


def test_refresh_task_is_registered_and_scheduled() -> None:
    assert "fieldops.tasks.refresh_time_based_statuses" in celery_app.tasks
    schedule = celery_app.conf.beat_schedule
    assert any(entry["task"] == "fieldops.tasks.refresh_time_based_statuses" for entry in schedule.values())


def test_refresh_task_records_transitions_without_an_actor(
    session_factory: sessionmaker[Session],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(tasks, "SessionLocal", session_factory)
    setup = session_factory()
    sent_at = datetime.now(timezone.utc) - timedelta(days=10)

    def work(db: Session) -> uuid.UUID:
        quote = Quote(quote_number="QUO-1", total=Decimal("100"), sent_at=sent_at)
        db.add(quote)
        db.flush()
        return quote.id

    # Created while it was still fresh, so only the sweep can move it on.
    quote_id = run_in_transaction(setup, work, now=sent_at)
    setup.close()

    result = tasks.refresh_time_based_statuses_task()

    assert result["examined"] == 1
    assert result["changed"] == [
        {"entity_type": "quote", "entity_id": str(quote_id), "old_status": "sent", "new_status": "follow_up"},
    ]
    assert result["failed"] == []

    check = session_factory()
    try:
        rows = list_history(check, "quote", quote_id)
        assert rows[0].changed_by is None
        assert rows[0].notes == "time-based refresh"
    finally:
        check.close()
