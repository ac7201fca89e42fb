import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.cache.layer import cache_layer
from app.core.config import get_settings
from app.core.exceptions import register_exception_handlers
from app.core.logging import setup_logging
from app.middleware.rate_limit import RateLimitMiddleware
from app.routers import health, tasks, users

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await cache_layer.init_cache()
    logger.info("Task Management API started")
    yield
    await cache_layer.close()


app = FastAPI(
    title="Task Management API",
    description="Async task management API with PostgreSQL, Redis and a Celery job queue",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)
app.add_middleware(
    RateLimitMiddleware, store_provider=lambda: cache_layer.store, settings=settings
)

# Include routers
app.include_router(tasks.router)
app.include_router(users.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {
        "message": "Welcome to Task Management API",
        "docs": "/docs",
        "version": "1.0.0",
    }
