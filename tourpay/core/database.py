"""
Database configuration and session management
"""

from typing import AsyncGenerator, Type
from uuid import UUID
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
    create_async_engine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool
from sqlalchemy import update
import logging
from contextlib import asynccontextmanager

from tourpay.config import settings

logger = logging.getLogger(__name__)

# Create async engine
if settings.is_testing:
    # NullPool doesn't accept pool parameters
    engine: AsyncEngine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        poolclass=NullPool,
    )
else:
    engine: AsyncEngine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        poolclass=AsyncAdaptedQueuePool,
    )

# Create async session factory
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Create declarative base
Base = declarative_base()


async def init_db():
    """
    Initialize database connections
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_db():
    """
    Close database connections
    """
    await engine.dispose()
    logger.info("Database connections closed")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session with explicit transaction management
    Each service call must use explicit transaction boundaries
    """
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


class DatabaseManager:
    """
    Transaction handling and row locking shared by the aggregate managers
    """

    def __init__(self):
        self.session_factory = async_session
        self.logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def transaction(self, session: AsyncSession):
        """
        Explicit transaction boundary on an existing session.
        Commits on clean exit, rolls back on exception.
        """
        try:
            async with session.begin():
                yield session
        except Exception as e:
            self.logger.error(f"Transaction rolled back: {type(e).__name__}: {e}")
            raise

    @asynccontextmanager
    async def atomic_transaction(self):
        """
        Create a new session with atomic transaction
        """
        async with self.session_factory() as session:
            async with self.transaction(session) as tx_session:
                yield tx_session

    async def lock_row(
        self,
        session: AsyncSession,
        model: Type,
        row_id: UUID,
        version_column: str,
    ) -> bool:
        """
        Take a write lock on a single row for the rest of the current transaction.

        Bumps the row's version counter instead of SELECT ... FOR UPDATE so the
        lock is also honoured by SQLite, where FOR UPDATE is a no-op and the first
        write of a transaction takes the database write lock.
        Must be the first statement of the transaction on SQLite.

        Returns False if the row does not exist.
        """
        column = getattr(model, version_column)
        result = await session.execute(
            update(model)
            .where(model.id == row_id)
            .values({version_column: column + 1})
            .execution_options(synchronize_session=False)
        )
        locked = result.rowcount == 1
        if locked:
            logger.debug(f"Row lock acquired: {model.__tablename__}:{row_id}")
        return locked


# Create global database manager
db_manager = DatabaseManager()
