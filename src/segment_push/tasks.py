"""Celery tasks for distributed segment pushes."""

import structlog

from segment_push.celery_app import celery_app
from segment_push.logging import configure_logging

logger = structlog.get_logger()


@celery_app.task(
    bind=True,
    name="segment_push.tasks.push_partition",
    max_retries=0,  # Retries happen per segment inside the partition
)
def push_partition_task(self, payload: dict) -> list[str]:
    """
    Push one partition of segments.

    Runs on a worker that shares nothing with the driver, so logging and
    every registry are set up again from the payload.
    """
    from segment_push.dispatch import run_push_partition

    configure_logging()
    log = logger.bind(task_id=self.request.id, partition=payload.get("partition", 0))
    log.info("celery_task_started")

    try:
        pushed = run_push_partition(payload)
    except Exception as e:
        log.error("celery_task_failed", error=str(e))
        raise

    log.info("celery_task_completed", segments=len(pushed))
    return pushed
