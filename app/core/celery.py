"""
Celery configuration for background tasks
"""
from celery import Celery
from celery.schedules import crontab
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery instance
celery_app = Celery(
    "clinic_billing",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.reports.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/Santo_Domingo",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,  # 1 hour

    task_routes={
        "app.modules.reports.tasks.*": {"queue": "reports"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "generate-period-reports": {
            "task": "app.modules.reports.tasks.generate_period_reports_task",
            "schedule": crontab(hour=2, minute=0),  # Daily, previous month
        }
    }
)

if __name__ == "__main__":
    celery_app.start()
