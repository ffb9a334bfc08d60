"""
Async database engine and session factory for the record store.

A sync run holds one pooled connection for the whole run (the advisory run
lock is bound to it) while stages open short-lived sessions per batch, so
the pool must have room for both.
"""

from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(
        url or settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
    )


engine = build_engine()

# expire_on_commit=False: ORM rows are converted to schemas after commit
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)


async def dispose_engine():
    """Close pooled connections on shutdown"""
    await engine.dispose()
    logger.info("Database engine disposed")
