"""Storage access layer — one serialized connection to the embedded store.

The embedded engine is not safe against concurrent use from asynchronous
call sites, so every statement goes through ``Database.run``: an
``asyncio.Lock`` (whose waiters are woken in FIFO order) keeps exactly one
operation in flight on the single ``AsyncConnection``.

Usage:
    db = Database("sqlite+aiosqlite:///./cvesync.db")
    await db.connect()
    await db.create_schema()
    count = await db.scalar(select(func.count()).select_from(Cve))
    await db.transaction(lambda conn: conn.execute(...))
    await db.close()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.sql.expression import Executable

from cvesync.core.logging import get_logger
from cvesync.models.base import Base

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[AsyncConnection], Awaitable[T]]

# Execution failures worth one reconnect-and-retry
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (OperationalError, InterfaceError)


def _is_memory_url(url: str) -> bool:
    return ":memory:" in url or "mode=memory" in url


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine backing a ``Database``.

    In-memory SQLite lives and dies with its DBAPI connection, so it is pinned
    with a static pool; everything else gets a fresh connection per checkout
    so that recycling really re-establishes it.
    """
    if url.startswith("sqlite"):
        poolclass = StaticPool if _is_memory_url(url) else NullPool
        return create_async_engine(
            url,
            echo=echo,
            poolclass=poolclass,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(url, echo=echo, poolclass=NullPool)


class Database:
    """Single logical connection with a one-operation-at-a-time discipline."""

    def __init__(self, url: str, *, recycle_after: int = 500, echo: bool = False) -> None:
        self.url = url
        self.recycle_after = recycle_after
        self._engine = build_engine(url, echo=echo)
        self._conn: AsyncConnection | None = None
        self._lock = asyncio.Lock()
        self._operation_count = 0
        self._in_transaction = False
        self.reconnect_count = 0

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        if self._conn is None:
            self._conn = await self._engine.connect()
            self._operation_count = 0

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
        await self._engine.dispose()

    async def create_schema(self) -> None:
        """Create every table declared on the models' metadata."""
        import cvesync.models  # noqa: F401  (registers all tables)

        await self.run(lambda conn: conn.run_sync(Base.metadata.create_all))

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @property
    def operation_count(self) -> int:
        return self._operation_count

    # ── Connection management ────────────────────────────────────────────────

    async def _reconnect(self) -> None:
        old = self._conn
        self._conn = None
        if old is not None:
            try:
                await old.close()
            except SQLAlchemyError as exc:
                logger.warning("Error closing stale connection", error=str(exc))
        self._conn = await self._engine.connect()
        self._operation_count = 0
        self.reconnect_count += 1

    async def _checkout(self) -> AsyncConnection:
        """Return the live connection, recycling it first when it is due."""
        if self._conn is None:
            await self.connect()
        self._operation_count += 1
        if self._operation_count > self.recycle_after and not self._in_transaction:
            logger.info("Recycling storage connection", operations=self._operation_count - 1)
            try:
                await self._reconnect()
                self._operation_count = 1
            except SQLAlchemyError as exc:
                logger.error("Connection recycle failed, keeping current connection", error=str(exc))
                if self._conn is None:
                    raise
        return self._conn

    @staticmethod
    async def _rollback_quietly(conn: AsyncConnection) -> None:
        try:
            await conn.rollback()
        except SQLAlchemyError as exc:
            logger.warning("Rollback failed", error=str(exc))

    # ── Serialized execution ─────────────────────────────────────────────────

    async def run(self, operation: Operation[T]) -> T:
        """Queue ``operation(conn)`` behind every earlier one and commit it.

        On a transient execution failure the connection is re-established and
        the operation retried exactly once; a second failure propagates.
        """
        async with self._lock:
            for attempt in (1, 2):
                conn = await self._checkout()
                try:
                    result = await operation(conn)
                    await conn.commit()
                    return result
                except TRANSIENT_ERRORS as exc:
                    await self._rollback_quietly(conn)
                    if attempt == 2 or self._in_transaction:
                        logger.error("Storage operation failed", error=str(exc))
                        raise
                    logger.warning(
                        "Storage operation failed, reconnecting and retrying",
                        error=str(exc),
                    )
                    await self._reconnect()
                except BaseException:
                    await self._rollback_quietly(conn)
                    raise
        raise AssertionError("unreachable")

    async def transaction(self, work: Operation[T]) -> T:
        """Run ``work(conn)`` as one atomic unit; any exception rolls it back.

        ``work`` must use the connection it is given rather than calling back
        into this ``Database``: the queue is held for the whole transaction.
        """
        async with self._lock:
            conn = await self._checkout()
            self._in_transaction = True
            try:
                async with conn.begin():
                    return await work(conn)
            finally:
                self._in_transaction = False

    # ── Convenience wrappers ─────────────────────────────────────────────────

    async def execute(self, statement: Executable) -> int:
        """Execute a DML statement and return the affected row count."""

        async def _op(conn: AsyncConnection) -> int:
            result = await conn.execute(statement)
            return result.rowcount

        return await self.run(_op)

    async def fetch_all(self, statement: Executable) -> list[RowMapping]:
        async def _op(conn: AsyncConnection) -> list[RowMapping]:
            result = await conn.execute(statement)
            return list(result.mappings().all())

        return await self.run(_op)

    async def fetch_one(self, statement: Executable) -> RowMapping | None:
        async def _op(conn: AsyncConnection) -> RowMapping | None:
            result = await conn.execute(statement)
            return result.mappings().first()

        return await self.run(_op)

    async def scalar(self, statement: Executable) -> Any:
        async def _op(conn: AsyncConnection) -> Any:
            result = await conn.execute(statement)
            return result.scalar()

        return await self.run(_op)
