"""
Atomic units of work against the account database.

Every account mutation goes through AccountStore.atomic(): the operation
receives a fresh session, and its writes are committed only if it returns
a successful Result. A failed Result or any exception rolls everything
back, so no partial state is ever committed.
"""
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from iam_service.auth.errors import Failure, Result
from iam_service.base_microservice import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[AsyncSession], Awaitable[Result[T]]]

MAX_ATTEMPTS = 2


def is_transient(error: SQLAlchemyError) -> bool:
    """Lock contention, deadlocks and dropped connections are worth one retry."""
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class AccountStore:
    """Runs operations inside single database transactions."""

    def __init__(self, session_factory, engine=None):
        self._session_factory = session_factory
        self.engine = engine

    async def create_schema(self) -> None:
        """Create any missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def atomic(self, operation: Operation) -> Result[T]:
        """
        Run an operation in one transaction.

        Args:
            operation: Coroutine function taking a session and returning a Result

        Returns:
            The operation's Result, or TRANSACTION_FAILED if storage failed
            (after one retry for transient errors)
        """
        for attempt in range(1, MAX_ATTEMPTS + 1):
            async with self._session_factory() as session:
                try:
                    result = await operation(session)
                    if result.ok:
                        await session.commit()
                    else:
                        await session.rollback()
                    return result
                except SQLAlchemyError as e:
                    await session.rollback()
                    if is_transient(e) and attempt < MAX_ATTEMPTS:
                        logger.warning(f"Transient storage error, retrying: {e.__class__.__name__}")
                        continue
                    logger.error(f"Transaction failed: {e.__class__.__name__}: {e}")
                    return Result.fail(Failure.TRANSACTION_FAILED)
        return Result.fail(Failure.TRANSACTION_FAILED)

    async def read(self, query: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run a read-only query in its own session."""
        async with self._session_factory() as session:
            return await query(session)
