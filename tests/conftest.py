import os

# Settings are read once and cached, so point them at test backends first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")

from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
from fakeredis import FakeAsyncRedis, FakeServer  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.cache.layer import CacheLayer, cache_layer, get_cache  # noqa: E402
from app.cache.store import KeyValueStore  # noqa: E402
from app.core.config import Settings  # noqa: E402
from app.database import build_session_factory, create_db_and_tables, get_db  # noqa: E402
from app.models import User  # noqa: E402
from app.queue.producer import TaskQueue, get_queue  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        celery_broker_url="memory://",
    )


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def store(redis):
    return KeyValueStore(redis)


@pytest.fixture
def cache(store, settings):
    return CacheLayer(store, settings)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def queue():
    """Producer double; records enqueued jobs without a broker."""
    mock = AsyncMock(spec=TaskQueue)
    mock.enqueue.return_value = "job-1"
    return mock


@pytest.fixture
async def user(db):
    user = User(email="owner@example.com", name="Owner")
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
async def client(session_factory, cache, store, queue, monkeypatch):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_queue] = lambda: queue
    # The rate limiter reads the shared store straight from the singleton
    monkeypatch.setattr(cache_layer, "_store", store)
    monkeypatch.setattr(cache_layer, "_initialized", True)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
