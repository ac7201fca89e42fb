from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from app.core.config import get_settings
from app.core.logging import setup_logging

settings = get_settings()

celery_app = Celery(
    "task_manager",
    broker=settings.celery_broker_url,
    include=["app.queue.worker", "app.queue.scheduled"],
)

celery_app.conf.update(
    task_default_queue=settings.queue_name,
    task_serializer="json",
    accept_content=["json"],
    # Outcomes are kept as job records with per-state retention instead
    task_ignore_result=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    timezone="UTC",
    beat_schedule={
        "check-overdue-tasks": {
            "task": "app.queue.scheduled.check_overdue_tasks",
            "schedule": crontab(minute=settings.overdue_scan_cron_minute),
        },
    },
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    setup_logging(settings.log_level)
