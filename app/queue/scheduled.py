import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import Settings, get_settings
from app.database import build_engine, build_session_factory
from app.queue.celery_app import celery_app
from app.queue.jobs import JobType
from app.queue.producer import TaskQueue, default_job_options
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)


class OverdueTasksScanner:
    """Finds pending tasks past their due date and queues one notification each."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: TaskQueue,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.settings = settings or get_settings()

    async def run(self, now: datetime | None = None) -> dict:
        logger.debug("Checking for overdue tasks...")

        async with self.session_factory() as db:
            overdue_tasks = await TaskService.find_overdue(db, now or datetime.now(timezone.utc))

        logger.info(f"Found {len(overdue_tasks)} overdue tasks")
        summary = {"found": len(overdue_tasks), "queued": 0, "failed": 0}
        if not overdue_tasks:
            return summary

        options = default_job_options(self.settings)
        for task in overdue_tasks:
            try:
                await self.queue.enqueue(
                    JobType.OVERDUE_TASKS_NOTIFICATION,
                    {
                        "task_id": task.id,
                        "user_id": task.user_id,
                        "title": task.title,
                        "due_date": task.due_date,
                    },
                    options,
                )
                summary["queued"] += 1
            except Exception as e:
                logger.error(f"Failed to queue task {task.id}: {e}")
                summary["failed"] += 1

        logger.info(
            f"Queued {summary['queued']} overdue tasks successfully, {summary['failed']} failed"
        )
        return summary


async def scan_overdue_tasks() -> dict:
    settings = get_settings()
    engine = build_engine(settings.database_url, pooled=False)
    try:
        scanner = OverdueTasksScanner(build_session_factory(engine), TaskQueue(), settings)
        return await scanner.run()
    finally:
        await engine.dispose()


@celery_app.task(name="app.queue.scheduled.check_overdue_tasks")
def check_overdue_tasks():
    return asyncio.run(scan_overdue_tasks())
