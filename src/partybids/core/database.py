from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from partybids.core.config import settings

# Every write path holds row locks for the whole unit of work, so the pool
# has to cover concurrent bids plus one maintenance job.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_timeout=settings.DB_POOL_TIMEOUT,
    pool_recycle=180,
    pool_pre_ping=True,
    connect_args={"command_timeout": settings.DB_COMMAND_TIMEOUT},
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for the ledger and aggregate tables."""


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session per request; services own commit and rollback."""
    async with async_session_maker() as session:
        yield session
