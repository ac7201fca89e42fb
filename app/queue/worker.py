import asyncio
import logging

from app.cache.layer import CacheLayer
from app.cache.store import KeyValueStore, create_redis
from app.core.config import get_settings
from app.database import build_engine, build_session_factory
from app.queue.celery_app import celery_app
from app.queue.jobs import Job, JobOptions, JobState
from app.queue.processor import JobOutcome, JobProcessor

logger = logging.getLogger(__name__)


class JobFailedError(Exception):
    """Raised to mark a Celery task as failed once its attempts are exhausted."""


async def run_job(job: Job) -> JobOutcome:
    # Each run gets its own event loop, so engine and Redis pool live for one job
    settings = get_settings()
    engine = build_engine(settings.database_url, pooled=False)
    store = KeyValueStore(create_redis(settings))
    try:
        processor = JobProcessor(
            build_session_factory(engine),
            CacheLayer(store, settings),
            store,
        )
        return await processor.handle(job)
    finally:
        await store.close()
        await engine.dispose()


@celery_app.task(name="app.queue.worker.process_job", bind=True, max_retries=None)
def process_job(self, job_type: str, data: dict, options: dict | None = None):
    job = Job(
        id=self.request.id,
        name=job_type,
        data=data,
        options=JobOptions.model_validate(options or {}),
        attempts_made=self.request.retries,
    )
    outcome = asyncio.run(run_job(job))

    if outcome.state is JobState.QUEUED:
        raise self.retry(
            exc=JobFailedError(outcome.error),
            countdown=outcome.retry_delay_ms / 1000,
            max_retries=job.options.max_attempts - 1,
        )
    if outcome.state is JobState.FAILED:
        raise JobFailedError(outcome.error)
    return outcome.result
