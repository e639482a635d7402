from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from credit_engine.core.config import settings
from credit_engine.core.logging import setup_logging

celery_app = Celery(
    "credit_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "credits": {"exchange": "credits", "routing_key": "credits"},
    },
)

celery_app.conf.beat_schedule = {
    "credit_expiry_sweep": {
        "task": "tasks.credit_expiry_sweep",
        "schedule": float(settings.CREDIT_EXPIRY_SWEEP_INTERVAL_SECONDS),
        "options": {"queue": "credits"},
    },
    "credit_expiry_warnings_daily": {
        "task": "tasks.credit_expiry_warnings",
        "schedule": crontab(hour=8, minute=0),
        "options": {"queue": "credits"},
    },
}

celery_app.autodiscover_tasks(["credit_engine.workers.tasks"], related_name="credit_expiry")


@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    setup_logging()
