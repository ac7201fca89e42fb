import logging
import uuid
from typing import Any, Awaitable, Callable, NamedTuple

from redis.asyncio import RedisError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.layer import CacheLayer
from app.cache.store import KeyValueStore
from app.models import TaskStatus
from app.queue.jobs import Job, JobRecord, JobState, JobType, next_retry_delay
from app.queue.producer import TaskQueue
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)

JOB_RECORD_KEY = "jobs:{job_id}"

Handler = Callable[[Job], Awaitable[dict]]


class JobOutcome(NamedTuple):
    state: JobState
    result: Any = None
    error: str | None = None
    retry_delay_ms: int | None = None


class JobProcessor:
    """
    Consumer for the task-processing queue.

    Dispatches each job to the handler registered for its type. Handler
    exceptions are re-raised by ``process`` so the queue can retry; ``handle``
    wraps one run with the active/completed/failed callbacks and decides
    between retry and terminal failure.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheLayer,
        store: KeyValueStore,
        queue: TaskQueue | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.store = store
        self.queue = queue or TaskQueue()
        self.handlers: dict[JobType, Handler] = {
            JobType.TASK_STATUS_UPDATE: self.handle_status_update,
            JobType.OVERDUE_TASKS_NOTIFICATION: self.handle_overdue_notification,
        }

    async def process(self, job: Job) -> dict:
        logger.debug(f"Processing job {job.id} of type {job.name} {job.attempt_info}")

        try:
            handler = self.handlers.get(JobType(job.name))
        except ValueError:
            handler = None
        if handler is None:
            # Producers from a newer deployment may send types we do not know
            logger.warning(f"Unknown job type: {job.name}")
            return {"success": False, "error": "Unknown job type"}

        try:
            result = await handler(job)
        except Exception as e:
            logger.error(f"Error processing job {job.id} {job.attempt_info}: {e}")
            attempts_left = job.attempts_left()
            if attempts_left > 0:
                logger.warning(f"Job {job.id} will be retried. Attempts left: {attempts_left}")
            else:
                logger.error(f"Job {job.id} failed after all retry attempts")
            raise

        logger.info(f"Successfully processed job {job.id} {job.attempt_info}")
        return result

    async def handle(self, job: Job) -> JobOutcome:
        """Run one attempt of a job through its full lifecycle."""
        await self.on_active(job)
        try:
            result = await self.process(job)
        except Exception as e:
            delay_ms = next_retry_delay(job)
            if delay_ms is not None:
                return JobOutcome(JobState.QUEUED, error=str(e), retry_delay_ms=delay_ms)
            await self.on_failed(job, e)
            return JobOutcome(JobState.FAILED, error=str(e))

        await self.on_completed(job, result)
        return JobOutcome(JobState.COMPLETED, result=result)

    # Event callbacks

    async def on_active(self, job: Job):
        logger.debug(f"Job {job.id} is now active")

    async def on_completed(self, job: Job, result: Any):
        logger.info(f"Job {job.id} completed successfully")
        record = JobRecord(
            id=job.id,
            name=job.name,
            state=JobState.COMPLETED,
            attempts=job.attempt,
            result=result,
        )
        await self._save_record(record, job.options.retain_completed_for)

    async def on_failed(self, job: Job, error: Exception):
        logger.error(f"Job {job.id} failed permanently: {error}")
        record = JobRecord(
            id=job.id,
            name=job.name,
            state=JobState.FAILED,
            attempts=job.attempt,
            error=str(error),
        )
        await self._save_record(record, job.options.retain_failed_for)

    async def _save_record(self, record: JobRecord, ttl_seconds: int):
        try:
            await self.store.set(
                JOB_RECORD_KEY.format(job_id=record.id),
                record.model_dump_json(),
                ttl_seconds,
            )
        except RedisError as e:
            logger.error(f"Could not store record for job {record.id}: {e}")

    # Handlers

    async def handle_status_update(self, job: Job) -> dict:
        task_id = job.data.get("task_id")
        status = job.data.get("status")
        if not task_id or not status:
            return {"success": False, "error": "Missing required data"}

        try:
            new_status = TaskStatus(status)
        except ValueError:
            return {"success": False, "error": f"Invalid status: {status}"}

        async with self.session_factory() as db:
            service = TaskService(db, self.cache, self.queue)
            task = await service.update_status(uuid.UUID(str(task_id)), new_status)

        return {"success": True, "task_id": str(task.id), "new_status": task.status.value}

    async def handle_overdue_notification(self, job: Job) -> dict:
        task_id = job.data.get("task_id")
        user_id = job.data.get("user_id")
        if not task_id or not user_id:
            return {"success": False, "error": "Missing required data"}

        logger.info(
            f"Task {task_id} '{job.data.get('title')}' for user {user_id} "
            f"is overdue (due {job.data.get('due_date')})"
        )
        return {"success": True, "task_id": task_id, "user_id": user_id}
