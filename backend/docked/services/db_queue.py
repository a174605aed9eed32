"""Serialized execution of database operations.

SQLite cannot run concurrent write transactions safely, so every database
operation is submitted here and executed one at a time, each in its own
session, in the order it was submitted.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DatabaseOperation = Callable[[AsyncSession], Awaitable[T]]


class DatabaseOperationQueue:
    """FIFO queue running one database operation at a time.

    Example:
        queue = DatabaseOperationQueue(AsyncSessionLocal)
        run = await queue.submit(lambda db: BatchService.get_run(db, run_id))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        # asyncio.Lock wakes waiters in FIFO order
        self._lock = asyncio.Lock()
        self._pending = 0
        self._completed = 0

    @property
    def pending(self) -> int:
        """Operations submitted but not finished, including the running one."""
        return self._pending

    @property
    def completed(self) -> int:
        return self._completed

    async def submit(self, operation: DatabaseOperation[T]) -> T:
        """Queue operation and wait for its result.

        The operation receives a fresh session. It commits its own work; on
        an exception the session is rolled back and the exception is raised
        to the submitter. A failed operation does not stop the queue.
        """
        self._pending += 1
        try:
            async with self._lock:
                async with self._session_factory() as session:
                    try:
                        return await operation(session)
                    except Exception:
                        await session.rollback()
                        raise
        finally:
            self._pending -= 1
            self._completed += 1
