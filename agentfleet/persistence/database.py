"""
Async SQLAlchemy engine and session factory
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from agentfleet.config import settings


class Base(DeclarativeBase):
    pass


def create_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    return create_async_engine(url or settings.DATABASE_URL, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet"""
    # Import registers the mapped classes on Base.metadata
    from agentfleet.persistence import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
