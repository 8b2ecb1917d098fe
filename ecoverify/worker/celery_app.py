"""
Celery Application Configuration
"""
from celery import Celery
from ecoverify.config import settings

# Create Celery app
celery_app = Celery(
    "ecoverify_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "ecoverify.worker.tasks"
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
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=240,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,
)

# Task routing
celery_app.conf.task_routes = {
    "ecoverify.worker.tasks.verify_action": {"queue": "verification"},
    "ecoverify.worker.tasks.*": {"queue": "default"},
}
