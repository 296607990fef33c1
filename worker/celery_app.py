from celery import Celery
from celery.schedules import crontab

from propai.core.config import settings

celery = Celery(
    "propai-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.refresh_active_batches": {"queue": "batches"},
    },
    beat_schedule={
        "refresh-active-batches": {
            "task": "worker.tasks.refresh_active_batches",
            "schedule": settings.batch_refresh_seconds,
        },
        "reset-usage-periods": {
            "task": "worker.tasks.reset_usage_periods",
            "schedule": crontab(minute=5, hour=0),
        },
    },
)
