"""Celery tasks for the settlement engine.

This module configures Celery and registers the recurring triggers. Beat
only fires them; whether a fired trigger runs is decided by the persisted
job descriptors (see app.services.orchestrator).
"""

from celery import Celery

from app.config import get_settings
from app.logging import configure_logging
from app.services.orchestrator import recurring_jobs

settings = get_settings()
configure_logging()

# Create Celery application
celery_app = Celery(
    "settlement",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.tasks.settlement",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit
    task_acks_late=True,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)


def build_beat_schedule() -> dict:
    """Beat entries for every recurring job, expiring before the next tick."""
    schedule = {}
    for job in recurring_jobs():
        entry = {"task": job.task, "schedule": job.celery_schedule(), "args": [job.name]}
        if isinstance(entry["schedule"], float):
            entry["options"] = {"expires": max(entry["schedule"] - 5, 1)}
        schedule[job.name] = entry
    return schedule


# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = build_beat_schedule()
