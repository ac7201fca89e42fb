import asyncio
import logging
from typing import Any, Mapping

from fastapi.encoders import jsonable_encoder

from app.core.config import Settings, get_settings
from app.queue.celery_app import celery_app
from app.queue.jobs import BackoffType, JobOptions, JobType

logger = logging.getLogger(__name__)

PROCESS_JOB_TASK = "app.queue.worker.process_job"


def default_job_options(settings: Settings | None = None) -> JobOptions:
    """Bounded exponential retry with short success and long failure retention."""
    settings = settings or get_settings()
    return JobOptions(
        max_attempts=settings.job_max_attempts,
        backoff_delay_ms=settings.job_backoff_delay_ms,
        backoff_type=BackoffType.EXPONENTIAL,
        retain_completed_for=settings.job_retain_completed_seconds,
        retain_failed_for=settings.job_retain_failed_seconds,
    )


class TaskQueue:
    """Producer side of the task-processing queue."""

    def __init__(self, celery=celery_app, settings: Settings | None = None):
        self.celery = celery
        self.settings = settings or get_settings()

    async def enqueue(
        self,
        job_type: JobType,
        payload: Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> str:
        """Publish a job and return its id. Broker errors propagate."""
        options = options or default_job_options(self.settings)
        # Publishing is blocking I/O on the broker connection
        result = await asyncio.to_thread(
            self.celery.send_task,
            PROCESS_JOB_TASK,
            args=(job_type.value, jsonable_encoder(payload)),
            kwargs={"options": options.model_dump(mode="json")},
            queue=self.settings.queue_name,
        )
        logger.debug(f"Queued job {result.id} of type {job_type.value}")
        return result.id


# Queue producer instance (singleton per worker)
task_queue = TaskQueue()


def get_queue() -> TaskQueue:
    return task_queue
