import logging
import math
import uuid
from datetime import datetime, timezone

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.decorators import cached
from app.cache.layer import ALL_USERS, TASK_KEY, USER_SCOPE, CacheLayer
from app.core.exceptions import NotFoundError, ValidationError
from app.models import (
    BatchAction,
    BatchItemResult,
    BatchOperation,
    BatchResult,
    PageMeta,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPage,
    TaskPriority,
    TaskResponse,
    TaskStats,
    TaskStatus,
    TaskUpdate,
    User,
)
from app.queue.jobs import JobType
from app.queue.producer import TaskQueue

logger = logging.getLogger(__name__)


def _user_scope(user_id: uuid.UUID | None) -> str:
    return USER_SCOPE.format(user_id=user_id or ALL_USERS)


class TaskService:
    def __init__(self, db: AsyncSession, cache: CacheLayer, queue: TaskQueue):
        self.db = db
        self.cache = cache
        self.queue = queue

    async def _get_or_404(self, task_id: uuid.UUID) -> Task:
        task = await self.db.get(Task, task_id)
        if not task:
            raise NotFoundError(f"Task with ID {task_id} not found")
        return task

    async def _notify_status_change(self, task: Task):
        # The write is already committed; a lost job must not undo it
        try:
            await self.queue.enqueue(
                JobType.TASK_STATUS_UPDATE,
                {"task_id": task.id, "status": task.status},
            )
        except Exception as e:
            logger.error(f"Failed to queue status update for task {task.id}: {e}")

    async def create(self, task_data: TaskCreate) -> Task:
        user = await self.db.get(User, task_data.user_id)
        if not user:
            raise ValidationError(f"User with ID {task_data.user_id} not found")

        task = Task.model_validate(task_data)
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)

        await self._notify_status_change(task)
        await self.cache.invalidate_user(task.user_id)
        return task

    async def find_all(self, filters: TaskFilter) -> dict:
        cache_key = self.cache.derive_key(
            f"{_user_scope(filters.user_id)}:list",
            {
                "page": filters.page,
                "limit": filters.limit,
                "status": filters.status.value if filters.status else "all",
                "priority": filters.priority.value if filters.priority else "all",
            },
        )
        cached_page = await self.cache.read(cache_key)
        if cached_page is not None:
            return cached_page

        query = select(Task)
        count_query = select(func.count()).select_from(Task)
        if filters.status:
            query = query.where(Task.status == filters.status)
            count_query = count_query.where(Task.status == filters.status)
        if filters.priority:
            query = query.where(Task.priority == filters.priority)
            count_query = count_query.where(Task.priority == filters.priority)
        if filters.user_id:
            query = query.where(Task.user_id == filters.user_id)
            count_query = count_query.where(Task.user_id == filters.user_id)

        skip = (filters.page - 1) * filters.limit
        query = query.order_by(Task.created_at.desc()).offset(skip).limit(filters.limit)

        tasks = (await self.db.exec(query)).all()
        total = (await self.db.exec(count_query)).one()

        page = TaskPage(
            data=[TaskResponse.model_validate(task) for task in tasks],
            meta=PageMeta(
                total=total,
                page=filters.page,
                limit=filters.limit,
                total_pages=math.ceil(total / filters.limit),
            ),
        ).model_dump(mode="json")

        await self.cache.write(cache_key, page, self.cache.settings.cache_ttl_list)
        return page

    @cached(lambda task_id, **_: TASK_KEY.format(task_id=task_id), "cache_ttl_item")
    async def _load_task(self, task_id: uuid.UUID):
        task = await self.db.get(Task, task_id)
        if task is None:
            return None
        return TaskResponse.model_validate(task)

    async def find_one(self, task_id: uuid.UUID) -> dict:
        task = await self._load_task(task_id)
        if task is None:
            raise NotFoundError(f"Task with ID {task_id} not found")
        return task

    async def update(self, task_id: uuid.UUID, task_data: TaskUpdate) -> Task:
        task = await self._get_or_404(task_id)
        original_status = task.status

        update_data = task_data.model_dump(exclude_unset=True)
        task.sqlmodel_update(update_data)
        task.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(task)

        if task.status != original_status:
            await self._notify_status_change(task)

        await self.cache.invalidate_task(task.id, task.user_id)
        return task

    async def remove(self, task_id: uuid.UUID) -> None:
        task = await self._get_or_404(task_id)
        user_id = task.user_id
        await self.db.delete(task)
        await self.db.commit()

        await self.cache.invalidate_task(task_id, user_id)

    async def update_status(self, task_id: uuid.UUID, status: TaskStatus) -> Task:
        """Status write used by the queue consumer; does not enqueue again."""
        task = await self._get_or_404(task_id)
        task.status = status
        task.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(task)

        await self.cache.invalidate_task(task.id, task.user_id)
        return task

    async def get_stats(self, user_id: uuid.UUID | None = None) -> dict:
        cache_key = f"{_user_scope(user_id)}:stats"
        cached_stats = await self.cache.read(cache_key)
        if cached_stats is not None:
            return cached_stats

        status_query = select(Task.status, func.count()).group_by(Task.status)
        priority_query = select(Task.priority, func.count()).group_by(Task.priority)
        if user_id:
            status_query = status_query.where(Task.user_id == user_id)
            priority_query = priority_query.where(Task.user_id == user_id)

        by_status = dict((await self.db.exec(status_query)).all())
        by_priority = dict((await self.db.exec(priority_query)).all())

        stats = TaskStats(
            total=sum(by_status.values()),
            completed=by_status.get(TaskStatus.COMPLETED, 0),
            in_progress=by_status.get(TaskStatus.IN_PROGRESS, 0),
            pending=by_status.get(TaskStatus.PENDING, 0),
            high_priority=by_priority.get(TaskPriority.HIGH, 0),
        ).model_dump()

        await self.cache.write(cache_key, stats, self.cache.settings.cache_ttl_stats)
        return stats

    async def batch_process(self, operation: BatchOperation) -> BatchResult:
        """
        Apply one action to many tasks, reporting each item on its own.

        There is no enclosing transaction: every item commits or rolls back
        independently, so earlier successes stay applied when a later item
        fails.
        """
        results: list[BatchItemResult] = []
        user_ids: set[uuid.UUID] = set()

        for task_id in operation.tasks:
            try:
                task = await self._get_or_404(task_id)
                user_ids.add(task.user_id)

                if operation.action == BatchAction.COMPLETE:
                    task.status = TaskStatus.COMPLETED
                    task.updated_at = datetime.now(timezone.utc)
                    await self.db.commit()
                    await self.db.refresh(task)
                    await self._notify_status_change(task)
                    result = TaskResponse.model_validate(task).model_dump(mode="json")
                else:
                    await self.db.delete(task)
                    await self.db.commit()
                    result = {"id": str(task_id), "deleted": True}

                await self.cache.invalidate(TASK_KEY.format(task_id=task_id))
                results.append(BatchItemResult(task_id=task_id, success=True, result=result))
            except NotFoundError as e:
                results.append(BatchItemResult(task_id=task_id, success=False, error=e.message))
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Batch {operation.action.value} failed for task {task_id}: {e}")
                results.append(BatchItemResult(task_id=task_id, success=False, error=str(e)))

        for user_id in user_ids:
            await self.cache.invalidate_user(user_id)

        successful = sum(1 for r in results if r.success)
        return BatchResult(
            processed=len(operation.tasks),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )

    @staticmethod
    async def find_overdue(db: AsyncSession, now: datetime | None = None) -> list[Task]:
        now = now or datetime.now(timezone.utc)
        query = select(Task).where(
            Task.due_date < now, Task.status == TaskStatus.PENDING
        )
        result = await db.exec(query)
        return list(result.all())
