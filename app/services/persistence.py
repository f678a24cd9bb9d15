"""Unit-of-work helpers with optimistic-concurrency retry."""

import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.services.errors import PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


async def commit_with_retry(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
) -> T:
    """Run work in a fresh session and commit it.

    A concurrent writer (StaleDataError on the version check) causes the
    whole unit to be re-run from a fresh read. Any other database error, or
    running out of attempts, rolls back and raises PersistenceFailure.
    Exceptions raised by work itself propagate unchanged after rollback.
    """
    for attempt in range(1, attempts + 1):
        async with session_factory() as session:
            try:
                result = await work(session)
                await session.commit()
                return result
            except StaleDataError:
                await session.rollback()
                logger.warning("Concurrent update detected, retrying (attempt %d/%d)", attempt, attempts)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Database error, unit of work rolled back: %s", e)
                raise PersistenceFailure(str(e)) from e
            except Exception:
                await session.rollback()
                raise
    raise PersistenceFailure(f"Gave up after {attempts} concurrent-update retries")
