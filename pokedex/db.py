"""
Storage providers.

A provider owns the process-wide async engine and session factory and runs
every storage operation under its fault-tolerance policy:

- SqliteProvider: single-file embedded store, one attempt per operation.
- PostgresProvider: networked store, transient failures are retried with
  exponential backoff.

select_provider() picks one of them once, at startup.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pokedex.config import POSTGRES, SQLITE, Settings
from pokedex.errors import ConstraintViolation, PersistenceError
from pokedex.migrations import downgrade, upgrade

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[AsyncSession], Awaitable[T]]


def mask_url(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


class StorageProvider:
    """
    Storage capability shared by both backends.

    run() opens a session and a transaction per attempt, so everything the
    operation does commits or rolls back together.
    """

    name = "base"

    def __init__(self, url: str, *, echo: bool = False, **engine_kwargs) -> None:
        self.url = url
        self.engine: AsyncEngine = create_async_engine(
            url,
            echo=echo,
            future=True,
            **engine_kwargs,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    async def run(self, operation: Operation[T]) -> T:
        async def attempt() -> T:
            async with self.session_factory() as session:
                async with session.begin():
                    return await operation(session)

        return await self._execute(attempt)

    async def migrate(self) -> None:
        async def attempt() -> None:
            async with self.engine.begin() as conn:
                await conn.run_sync(upgrade)

        await self._execute(attempt)

    async def drop_schema(self) -> None:
        async def attempt() -> None:
            async with self.engine.begin() as conn:
                await conn.run_sync(downgrade)

        await self._execute(attempt)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def _execute(self, attempt: Callable[[], Awaitable[T]]) -> T:
        try:
            return await attempt()
        except IntegrityError as exc:
            raise ConstraintViolation(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{self.name} operation failed") from exc


class SqliteProvider(StorageProvider):
    """Embedded store. A failed operation surfaces immediately."""

    name = SQLITE

    def __init__(self, url: str, *, echo: bool = False) -> None:
        super().__init__(url, echo=echo)
        # SQLite ignores foreign keys (and their cascades) unless asked per connection
        event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def is_transient(exc: BaseException) -> bool:
    """
    Whether a storage error is expected to go away on retry.

    Constraint violations are permanent; connection drops, timeouts and
    server-side operational errors are not.
    """
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(
        exc,
        (OperationalError, InterfaceError, PoolTimeoutError, OSError, asyncio.TimeoutError),
    )


class PostgresProvider(StorageProvider):
    """
    Client-server store with automatic retry on transient failures.

    Up to max_attempts tries per operation; the wait before attempt n+1 is
    min(base_delay * 2 ** (n - 1), max_delay) seconds.
    """

    name = POSTGRES

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        max_attempts: int = 5,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        super().__init__(url, echo=echo, pool_pre_ping=True)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def _execute(self, attempt: Callable[[], Awaitable[T]]) -> T:
        for attempt_no in range(1, self.max_attempts + 1):
            try:
                return await attempt()
            except IntegrityError as exc:
                raise ConstraintViolation(str(exc.orig)) from exc
            except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
                if not is_transient(exc):
                    raise PersistenceError(f"{self.name} operation failed") from exc
                if attempt_no == self.max_attempts:
                    logger.error(
                        "database operation failed after attempts=%d error=%s",
                        self.max_attempts,
                        exc.__class__.__name__,
                    )
                    raise PersistenceError(
                        f"{self.name} operation failed after {self.max_attempts} attempts"
                    ) from exc
                wait_time = self.backoff(attempt_no)
                logger.warning(
                    "transient database error attempt=%d/%d retry_in=%.1fs error=%s",
                    attempt_no,
                    self.max_attempts,
                    wait_time,
                    exc.__class__.__name__,
                )
                await self._sleep(wait_time)
        raise AssertionError("unreachable")


def select_provider(settings: Settings) -> StorageProvider:
    """Build the provider for the configured backend. Called once per process."""
    if settings.provider == SQLITE:
        provider: StorageProvider = SqliteProvider(settings.database_url, echo=settings.echo_sql)
    elif settings.provider == POSTGRES:
        provider = PostgresProvider(settings.database_url, echo=settings.echo_sql)
    else:
        raise ValueError(f"Unknown database provider: {settings.provider!r}")

    logger.info(
        "storage provider selected provider=%s url=%s",
        provider.name,
        mask_url(settings.database_url),
    )
    return provider
