"""
EcoTicker Celery Task Definitions & Beat Schedule.

Tasks:
  - ingest_articles  fetch GNews + RSS, assign to topics, store unscored
  - score_topics     batch-score every topic with unscored articles
  - run_batch        ingest then score (daily at BATCH_HOUR_UTC, or admin-triggered)
"""
from celery import Celery
from celery.schedules import crontab
from ecoticker.config import get_settings

settings = get_settings()

celery_app = Celery(
    "ecoticker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Import task modules
    include=[
        "ecoticker.tasks.ingestion",
        "ecoticker.tasks.scoring_task",
    ],
)

# ─── Celery Beat Schedule ───
celery_app.conf.beat_schedule = {
    "batch-daily": {
        "task": "ecoticker.tasks.scoring_task.run_batch",
        "schedule": crontab(hour=settings.BATCH_HOUR_UTC, minute=0),
        "kwargs": {"triggered_by": "scheduler"},
    },
}
