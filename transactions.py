import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from config import settings
from errors import ConstraintError, RecipeBookError, TransactionConflict, TransactionTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IsolationLevel(str, enum.Enum):
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


# Weakest first. A dialect lacking the requested level gets the next
# stricter one it supports.
_STRICTNESS = [IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE]

# SQLite is absent: its write transactions are always serializable and
# pinning a level through the driver would re-enable its implicit BEGIN.
_SUPPORTED_LEVELS = {
    "postgresql": {IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE},
    "mysql": {IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE},
    "mariadb": {IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE},
    "mssql": {IsolationLevel.REPEATABLE_READ, IsolationLevel.SERIALIZABLE},
    "oracle": {IsolationLevel.SERIALIZABLE},
}

# serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = {"40001", "40P01"}

# seconds a lock wait may run past the deadline, so the timeout fires first
_SQLITE_LOCK_SLACK = 0.1


def isolation_for(dialect_name: str, level: IsolationLevel) -> str | None:
    """Return the level to pin on the connection, or None to leave it alone."""
    supported = _SUPPORTED_LEVELS.get(dialect_name)
    if not supported:
        return None
    for candidate in _STRICTNESS[_STRICTNESS.index(level):]:
        if candidate in supported:
            return candidate.value
    return None


def _is_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(orig)


@asynccontextmanager
async def store_errors(action: str) -> AsyncIterator[None]:
    """Translate store exceptions raised in the block into RecipeBookError."""
    try:
        yield
    except IntegrityError as exc:
        logger.exception("Constraint violated while trying to %s", action)
        raise ConstraintError(f"Failed to {action}") from exc
    except DBAPIError as exc:
        if _is_conflict(exc):
            logger.warning("Conflicting transaction while trying to %s: %s", action, exc.orig)
            raise TransactionConflict(f"Failed to {action}") from exc
        logger.exception("Store error while trying to %s", action)
        raise RecipeBookError(f"Failed to {action}") from exc
    except SQLAlchemyError as exc:
        logger.exception("Store error while trying to %s", action)
        raise RecipeBookError(f"Failed to {action}") from exc


async def run_in_transaction(
    session: AsyncSession,
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    action: str,
    isolation_level: IsolationLevel = IsolationLevel.SERIALIZABLE,
    timeout: float | None = None,
) -> T:
    """Run ``work`` as one atomic unit on ``session``.

    The session must not have a transaction in progress. Everything ``work``
    does is committed together, or rolled back when it raises or when the
    unit, from BEGIN through COMMIT, outlives ``timeout`` seconds. Nothing is
    retried here.
    """
    if timeout is None:
        timeout = settings.transaction_timeout
    level = isolation_for(session.bind.dialect.name, isolation_level)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    async def unit() -> T:
        async with session.begin():
            conn = await session.connection(
                execution_options={"isolation_level": level} if level is not None else None
            )
            if conn.dialect.name == "sqlite":
                await _cap_sqlite_lock_wait(conn, deadline - loop.time())
            return await work(session)

    try:
        async with store_errors(action):
            return await asyncio.wait_for(unit(), timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("Transaction to %s exceeded %ss and was rolled back", action, timeout)
        raise TransactionTimeout(f"Failed to {action}: timed out") from exc
    except TransactionConflict as exc:
        if loop.time() < deadline:
            raise
        logger.warning("Transaction to %s waited out its %ss on a lock", action, timeout)
        raise TransactionTimeout(f"Failed to {action}: timed out") from exc


async def _cap_sqlite_lock_wait(conn: AsyncConnection, remaining: float) -> None:
    """Bound SQLite's busy wait by the unit's remaining time.

    A statement blocked on the file lock runs in the driver's thread and
    cannot be cancelled, so the wait itself has to end shortly after the
    deadline for the rollback to run.
    """
    wait = min(settings.sqlite_busy_timeout, max(remaining, 0) + _SQLITE_LOCK_SLACK)
    await conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(wait * 1000)}")
