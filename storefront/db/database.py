"""
Database Connection and Session Management
"""
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from storefront.core.config import Settings

Base = declarative_base()


def create_engine(settings: Settings) -> AsyncEngine:
    """Engine for one process; built at startup from the injected settings"""
    kwargs = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting a database session from the app's factory"""
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
