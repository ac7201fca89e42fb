import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from app.cache.layer import CacheLayer, get_cache
from app.database import get_db
from app.models import (
    BatchOperation,
    BatchResult,
    TaskCreate,
    TaskFilter,
    TaskPage,
    TaskPriority,
    TaskResponse,
    TaskStats,
    TaskStatus,
    TaskUpdate,
)
from app.queue.producer import TaskQueue, get_queue
from app.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


def get_task_service(
    db: AsyncSession = Depends(get_db),
    cache: CacheLayer = Depends(get_cache),
    queue: TaskQueue = Depends(get_queue),
) -> TaskService:
    return TaskService(db, cache, queue)


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, service: TaskServiceDep):
    """Create a new task"""
    return await service.create(task_data)


@router.get("", response_model=TaskPage)
async def get_tasks(
    service: TaskServiceDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: TaskStatus | None = None,
    priority: TaskPriority | None = None,
    user_id: uuid.UUID | None = None,
):
    filters = TaskFilter(
        page=page, limit=limit, status=status, priority=priority, user_id=user_id
    )
    return await service.find_all(filters)


@router.get("/stats", response_model=TaskStats)
async def get_stats(service: TaskServiceDep, user_id: uuid.UUID | None = None):
    """Task counts by status and priority"""
    return await service.get_stats(user_id)


@router.post("/batch", response_model=BatchResult)
async def batch_process(operation: BatchOperation, service: TaskServiceDep):
    """Complete or delete several tasks, reporting each one separately"""
    return await service.batch_process(operation)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: uuid.UUID, service: TaskServiceDep):
    """Get a specific task by ID"""
    return await service.find_one(task_id)


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(task_id: uuid.UUID, task_data: TaskUpdate, service: TaskServiceDep):
    return await service.update(task_id, task_data)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: uuid.UUID, service: TaskServiceDep):
    """Delete a task"""
    await service.remove(task_id)
