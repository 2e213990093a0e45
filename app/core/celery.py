"""
Celery configuration for background tasks
"""
from celery import Celery

from app.core.config import settings

redis_url = settings.redis_url

# Create Celery instance
celery_app = Celery(
    "gymspace_billing",
    broker=redis_url,
    backend=redis_url,
    include=[
        "app.modules.subscriptions.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,  # 5 minutes
    task_soft_time_limit=4 * 60,  # 4 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "app.modules.subscriptions.tasks.*": {"queue": "subscriptions"},
    },
)

if __name__ == "__main__":
    celery_app.start()
