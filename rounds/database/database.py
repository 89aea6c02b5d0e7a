import asyncio
from typing import Optional, Callable, Awaitable, TypeVar
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool
from contextlib import asynccontextmanager

from rounds.config import Config
from rounds.database.models import Base
from rounds.utils.exceptions import ConflictError
from rounds.utils.logger import setup_logger

T = TypeVar('T')

# Errors that mean "someone else wrote first" and are worth another attempt
RETRYABLE_ERRORS = (StaleDataError, IntegrityError, OperationalError)


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        if self.database_url:
            database_url = self.database_url
        else:
            database_url = Config.get_async_database_url()

        engine_kwargs = {'echo': Config.DEBUG}
        if ':memory:' in database_url:
            # One shared connection, otherwise each session sees an empty database
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            engine_kwargs['poolclass'] = StaticPool

        self.engine = create_async_engine(database_url, **engine_kwargs)

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session for reads"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await match_ops.create_match(..., session=session)
                await matchmaking_ops.cancel(..., session=session)
                # All operations commit together here
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def run_transaction(
        self,
        func: Callable[[AsyncSession], Awaitable[T]],
        operation: Optional[str] = None,
        max_retries: Optional[int] = None
    ) -> T:
        """
        Run a read-modify-write function in its own transaction, retrying on
        concurrent write conflicts.

        func receives a fresh session on every attempt and must re-read
        everything it validates. Business errors raised by func propagate
        immediately; only version conflicts and lock/constraint races retry.

        Args:
            func: Async callable taking the session
            operation: Name used in logs and in the ConflictError
            max_retries: Attempts before giving up (default Config.TRANSACTION_MAX_RETRIES)

        Returns:
            Whatever func returns, after a successful commit

        Raises:
            ConflictError: If every attempt hit a conflict
        """
        attempts = max_retries or Config.TRANSACTION_MAX_RETRIES
        name = operation or getattr(func, '__name__', 'transaction')

        for attempt in range(attempts):
            try:
                async with self.transaction() as session:
                    return await func(session)
            except RETRYABLE_ERRORS as e:
                if attempt == attempts - 1:
                    self.logger.error(f"{name} failed after {attempts} attempts: {e}")
                    raise ConflictError(name, attempts) from e
                self.logger.warning(f"Retry attempt {attempt + 1} for {name}: {e}")
                await asyncio.sleep(0.05 * (2 ** attempt))  # Exponential backoff

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")
