from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import get_settings


def build_engine(url: str, *, pooled: bool = True) -> AsyncEngine:
    """Create an async engine. Unpooled engines are for short-lived event loops."""
    options = {"echo": False, "future": True}
    if pooled:
        options["pool_pre_ping"] = True
    else:
        options["poolclass"] = NullPool
    return create_async_engine(url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


# Create async engine
engine = build_engine(get_settings().database_url)

# Create async session factory using async_sessionmaker
async_session = build_session_factory(engine)


# Dependency for getting DB session
async def get_db():
    async with async_session() as session:
        yield session


# Helper function to create tables (optional, useful for testing)
async def create_db_and_tables(bind: AsyncEngine = engine):
    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
