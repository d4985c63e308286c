"""Celery application factory"""
from celery import Celery
from kombu import Queue

from calsync.config.settings import get_settings


def create_celery_app() -> Celery:
    """Create and configure Celery application"""
    settings = get_settings()

    celery_app = Celery(
        "calsync",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
        include=["calsync.tasks.calendar_tasks"],
    )

    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        # Booking pushes stay ahead of the periodic sweeps
        task_routes={
            "calsync.tasks.calendar_tasks.sync_booking": {"queue": "calendar"},
            "calsync.tasks.calendar_tasks.update_booking": {"queue": "calendar"},
            "calsync.tasks.calendar_tasks.delete_booking": {"queue": "calendar"},
            "calsync.tasks.calendar_tasks.*": {"queue": "calendar_maintenance"},
        },
        task_queues=(
            Queue("calendar", routing_key="calendar"),
            Queue("calendar_maintenance", routing_key="calendar_maintenance"),
        ),

        # Worker settings
        worker_max_tasks_per_child=1000,
        worker_prefetch_multiplier=1,
        task_acks_late=True,

        beat_schedule={
            "calendar-retry-failed": {
                "task": "calsync.tasks.calendar_tasks.retry_failed",
                "schedule": 15 * 60,
            },
            "calendar-sync-pending": {
                "task": "calsync.tasks.calendar_tasks.sync_pending",
                "schedule": 30 * 60,
            },
            "calendar-import-availability": {
                "task": "calsync.tasks.calendar_tasks.import_all_availability",
                "schedule": 60 * 60,
            },
        },

        broker_connection_retry_on_startup=True,
    )

    return celery_app


celery_app = create_celery_app()
