from celery import Celery
from celery.schedules import crontab

from stream_queue.core.config import Settings

settings = Settings()

celery_app = Celery(
    "stream_queue",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    include=["stream_queue.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "stream_queue.workers.tasks.*": {"queue": "stream_queue_maintenance"},
    },

    worker_concurrency=1,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_ignore_result=True,

    beat_schedule={
        "promote-delayed-messages": {
            "task": "stream_queue.workers.tasks.promote_delayed_messages",
            "schedule": settings.SCHEDULER_INTERVAL,
        },
        "cleanup-expired-delayed-messages": {
            "task": "stream_queue.workers.tasks.cleanup_expired_delayed_messages",
            "schedule": crontab(hour=2, minute=0),  # Daily at 2 AM
        },
    },
)
