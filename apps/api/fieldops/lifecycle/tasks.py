from __future__ import annotations

from typing import Any

from fieldops.core.celery_app import celery_app
from fieldops.core.database import SessionLocal
from fieldops.lifecycle.refresher import refresh_time_based_statuses


@celery_app.task(name="fieldops.tasks.refresh_time_based_statuses")
def refresh_time_based_statuses_task() -> dict[str, Any]:
    session = SessionLocal()
    try:
        report = refresh_time_based_statuses(session)
    finally:
        session.close()
    return report.to_dict()
