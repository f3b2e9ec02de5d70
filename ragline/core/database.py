"""Async database engine and session factory."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from ragline.core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=20,
    max_overflow=10,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async DB session."""
    async with async_session_factory() as session:
        yield session


def get_session_factory() -> sessionmaker:
    """FastAPI dependency for components that open their own sessions."""
    return async_session_factory


async def init_db() -> None:
    """Create all tables. Schema migrations are managed outside the service."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
