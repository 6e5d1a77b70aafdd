from celery import Celery
from celery.schedules import crontab

from fieldops.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "fieldops_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["fieldops.lifecycle.tasks"],
)

celery_app.conf.timezone = settings.business_timezone
celery_app.conf.beat_schedule = {
    "refresh-time-based-statuses": {
        "task": "fieldops.tasks.refresh_time_based_statuses",
        "schedule": crontab(hour=settings.refresh_schedule_hour, minute=0),
    },
}
