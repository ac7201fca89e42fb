"""Tests for TaskService against SQLite and fakeredis."""

import uuid
from datetime import datetime, timezone

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import (
    BatchAction,
    BatchOperation,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)
from app.queue.jobs import JobType
from app.services.task_service import TaskService


@pytest.fixture
def service(db, cache, queue):
    return TaskService(db, cache, queue)


async def add_task(db, user, **fields):
    task = Task(title=fields.pop("title", "Task"), user_id=user.id, **fields)
    db.add(task)
    await db.commit()
    await db.refresh(task)
    return task


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_enqueues_status_job(self, service, queue, user):
        task = await service.create(TaskCreate(title="Write docs", user_id=user.id))

        assert task.status == TaskStatus.PENDING
        queue.enqueue.assert_awaited_once_with(
            JobType.TASK_STATUS_UPDATE,
            {"task_id": task.id, "status": TaskStatus.PENDING},
        )

    @pytest.mark.asyncio
    async def test_create_for_unknown_user(self, service):
        with pytest.raises(ValidationError, match="not found"):
            await service.create(TaskCreate(title="Orphan", user_id=uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_enqueue_failure_does_not_undo_create(self, service, queue, db, user):
        queue.enqueue.side_effect = ConnectionError("broker down")

        task = await service.create(TaskCreate(title="Still saved", user_id=user.id))

        assert await db.get(Task, task.id) is not None

    @pytest.mark.asyncio
    async def test_create_invalidates_user_views(self, service, cache, user):
        await cache.write(f"tasks:user:{user.id}:stats", {"total": 0}, 60)
        await cache.write("tasks:user:all:list:page:1", {"data": []}, 60)

        await service.create(TaskCreate(title="New", user_id=user.id))

        assert await cache.read(f"tasks:user:{user.id}:stats") is None
        assert await cache.read("tasks:user:all:list:page:1") is None


class TestFindAll:
    @pytest.mark.asyncio
    async def test_pagination_and_filters(self, service, db, user):
        for i in range(5):
            await add_task(db, user, title=f"low {i}", priority=TaskPriority.LOW)
        await add_task(db, user, title="urgent", priority=TaskPriority.HIGH)

        page = await service.find_all(TaskFilter(page=2, limit=2, priority=TaskPriority.LOW))

        assert page["meta"] == {"total": 5, "page": 2, "limit": 2, "total_pages": 3}
        assert len(page["data"]) == 2
        assert all(t["priority"] == "LOW" for t in page["data"])

    @pytest.mark.asyncio
    async def test_results_are_cached(self, service, db, user):
        await add_task(db, user, title="first")
        first = await service.find_all(TaskFilter())

        await add_task(db, user, title="added behind the cache's back")
        second = await service.find_all(TaskFilter())

        assert second == first
        assert second["meta"]["total"] == 1

    @pytest.mark.asyncio
    async def test_filter_by_user(self, service, db, user):
        await add_task(db, user)
        page = await service.find_all(TaskFilter(user_id=uuid.uuid4()))
        assert page["meta"]["total"] == 0


class TestFindOne:
    @pytest.mark.asyncio
    async def test_find_one_caches_payload(self, service, cache, db, user):
        task = await add_task(db, user, title="cached")

        found = await service.find_one(task.id)

        assert found["title"] == "cached"
        assert await cache.read(f"tasks:{task.id}") == found

    @pytest.mark.asyncio
    async def test_missing_task(self, service):
        with pytest.raises(NotFoundError):
            await service.find_one(uuid.uuid4())


class TestUpdate:
    @pytest.mark.asyncio
    async def test_status_change_enqueues_and_invalidates(self, service, cache, queue, db, user):
        task = await add_task(db, user)
        await service.find_one(task.id)

        updated = await service.update(task.id, TaskUpdate(status=TaskStatus.IN_PROGRESS))

        assert updated.status == TaskStatus.IN_PROGRESS
        assert updated.updated_at is not None
        queue.enqueue.assert_awaited_once()
        assert await cache.read(f"tasks:{task.id}") is None

    @pytest.mark.asyncio
    async def test_update_without_status_change(self, service, queue, db, user):
        task = await add_task(db, user)

        updated = await service.update(task.id, TaskUpdate(title="Renamed"))

        assert updated.title == "Renamed"
        queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_missing_task(self, service):
        with pytest.raises(NotFoundError):
            await service.update(uuid.uuid4(), TaskUpdate(title="x"))


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove(self, service, db, user):
        task = await add_task(db, user)
        await service.remove(task.id)
        with pytest.raises(NotFoundError):
            await service.find_one(task.id)

    @pytest.mark.asyncio
    async def test_remove_missing_task(self, service):
        with pytest.raises(NotFoundError):
            await service.remove(uuid.uuid4())


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, service, db, user):
        await add_task(db, user, status=TaskStatus.COMPLETED, priority=TaskPriority.HIGH)
        await add_task(db, user, status=TaskStatus.IN_PROGRESS)
        await add_task(db, user)
        await add_task(db, user, priority=TaskPriority.HIGH)

        stats = await service.get_stats()

        assert stats == {
            "total": 4,
            "completed": 1,
            "in_progress": 1,
            "pending": 2,
            "high_priority": 2,
        }

    @pytest.mark.asyncio
    async def test_stats_are_cached(self, service, cache, db, user):
        await add_task(db, user)
        stats = await service.get_stats(user.id)
        assert await cache.read(f"tasks:user:{user.id}:stats") == stats


class TestBatch:
    @pytest.mark.asyncio
    async def test_delete_with_missing_task(self, service, db, user):
        a = await add_task(db, user, title="A")
        c = await add_task(db, user, title="C")
        missing = uuid.uuid4()

        result = await service.batch_process(
            BatchOperation(tasks=[a.id, missing, c.id], action=BatchAction.DELETE)
        )

        assert (result.processed, result.successful, result.failed) == (3, 2, 1)
        failure = result.results[1]
        assert failure.task_id == missing
        assert failure.success is False
        assert failure.error == f"Task with ID {missing} not found"
        assert await db.get(Task, a.id) is None
        assert await db.get(Task, c.id) is None

    @pytest.mark.asyncio
    async def test_complete(self, service, queue, db, user):
        a = await add_task(db, user)
        b = await add_task(db, user)

        result = await service.batch_process(
            BatchOperation(tasks=[a.id, b.id], action=BatchAction.COMPLETE)
        )

        assert result.successful == 2
        assert all(r.result["status"] == "COMPLETED" for r in result.results)
        assert queue.enqueue.await_count == 2

    @pytest.mark.asyncio
    async def test_batch_invalidates_user_views(self, service, cache, db, user):
        a = await add_task(db, user)
        await cache.write(f"tasks:user:{user.id}:stats", {"total": 1}, 60)

        await service.batch_process(BatchOperation(tasks=[a.id], action=BatchAction.COMPLETE))

        assert await cache.read(f"tasks:user:{user.id}:stats") is None


class TestFindOverdue:
    @pytest.mark.asyncio
    async def test_find_overdue(self, db, user):
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)
        late = await add_task(db, user, due_date=datetime(2026, 10, 1, tzinfo=timezone.utc))
        await add_task(db, user, due_date=datetime(2026, 11, 1, tzinfo=timezone.utc))

        overdue = await TaskService.find_overdue(db, now)

        assert [t.id for t in overdue] == [late.id]
