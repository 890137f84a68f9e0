"""Celery application configuration"""

from celery import Celery

from site_export.config import settings

# Create Celery app
celery_app = Celery(
    "site_export",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        'site_export.workers.tasks'
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    # A slice overrunning its budget is killed like the host would kill it
    task_time_limit=settings.SLICE_TASK_TIME_LIMIT,
    task_soft_time_limit=max(1, settings.SLICE_TASK_TIME_LIMIT - 5),
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,
    beat_schedule={
        'monitor-export': {
            'task': 'site_export.workers.tasks.monitor_export',
            'schedule': float(settings.MONITOR_INTERVAL_SECONDS),
        },
    },
)
