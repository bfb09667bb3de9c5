"""Celery application configuration."""

from celery import Celery

from segment_push.config import get_settings

settings = get_settings()

celery_app = Celery(
    "segment_push",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["segment_push.tasks"],
)

celery_app.conf.update(
    task_default_queue=settings.celery_task_default_queue,
    # A redelivered partition would push its segments twice
    task_acks_late=False,
    worker_prefetch_multiplier=1,
    # Payloads are plain JSON job specs
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    result_expires=86400,  # 24 hours
    task_track_started=True,
)
