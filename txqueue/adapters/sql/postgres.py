"""
Asyncpg ports — PostgreSQL execution ports for multi-process deployments.

Install extras: pip install "txqueue[postgres]"

Variants
--------
AsyncpgPoolPort        — acquires a connection from an asyncpg.Pool for the
                         duration of one call; each statement auto-commits.
AsyncpgTransactionPort — wraps a connection that is already inside a
                         transaction. It never commits or rolls back a
                         transaction it did not open.

Enlisting a publish in a business transaction
---------------------------------------------
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute("INSERT INTO users (email) VALUES ($1)", email)
            await queue.publish(
                "welcome-email",
                {"email": email},
                port=AsyncpgTransactionPort(conn),
            )
    # committed: the job is now visible to workers

Atomic leasing relies on SELECT ... FOR UPDATE SKIP LOCKED (see plans.py).
Statements that return rows run through conn.fetch(); the rest through
conn.execute(), whose command tag carries the affected-row count.
"""

from __future__ import annotations

import asyncio
import dataclasses
import re
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from txqueue.core.plans import POSTGRESQL
from txqueue.domain.errors import ExecutionError, InvalidTransactionState
from txqueue.ports.sql import ExecutionResult

if TYPE_CHECKING:
    import asyncpg

_ROW_RETURNING = re.compile(r"^\s*(SELECT|WITH|VALUES)\b|\bRETURNING\b", re.IGNORECASE)


@dataclasses.dataclass
class AsyncpgPoolPort:
    """
    Pooled PostgreSQL execution port.

    Parameters
    ----------
    pool    : asyncpg.Pool shared by every concurrent caller
    timeout : per-statement timeout in seconds (None = driver default)
    """

    pool: asyncpg.Pool
    timeout: float | None = None

    dialect: str = dataclasses.field(default=POSTGRESQL, init=False)

    @classmethod
    async def connect(cls, dsn: str, **pool_kwargs: Any) -> AsyncpgPoolPort:
        """Create an asyncpg pool for `dsn` and wrap it."""
        asyncpg = _import_asyncpg()
        try:
            pool = await asyncpg.create_pool(dsn, **pool_kwargs)
        except Exception as exc:
            raise _wrap(exc) from exc
        return cls(pool=pool)

    async def close(self) -> None:
        await self.pool.close()

    async def execute(
        self,
        text: str,
        params: Sequence[Any] = (),
    ) -> ExecutionResult:
        """Run one statement on a pooled connection."""
        try:
            async with self.pool.acquire() as conn:
                return await _run(conn, text, params, self.timeout)
        except ExecutionError:
            raise
        except Exception as exc:
            raise _wrap(exc) from exc

    async def begin(self) -> AsyncpgTransactionPort:
        """
        Acquire a connection and start a transaction on it.

        The returned port owns both; commit() or rollback() ends the
        transaction and releases the connection back to the pool.
        """
        try:
            conn = await self.pool.acquire()
        except Exception as exc:
            raise _wrap(exc) from exc
        try:
            tx = conn.transaction()
            await tx.start()
        except BaseException as exc:
            await self.pool.release(conn)
            if isinstance(exc, Exception):
                raise _wrap(exc) from exc
            raise
        return AsyncpgTransactionPort(
            connection=conn,
            timeout=self.timeout,
            _transaction=tx,
            _pool=self.pool,
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncpgTransactionPort]:
        """Commit on success, roll back on exception."""
        port = await self.begin()
        try:
            yield port
        except BaseException:
            if not port.closed:
                await port.rollback()
            raise
        if not port.closed:
            await port.commit()


@dataclasses.dataclass
class AsyncpgTransactionPort:
    """
    Transactional PostgreSQL execution port.

    Parameters
    ----------
    connection : asyncpg connection currently inside a transaction
    timeout    : per-statement timeout in seconds

    Constructed directly, the port borrows a transaction the caller manages
    (``async with conn.transaction()``); commit()/rollback() are only valid on
    ports returned by AsyncpgPoolPort.begin().
    """

    connection: asyncpg.Connection
    timeout: float | None = None

    dialect: str = dataclasses.field(default=POSTGRESQL, init=False)

    _transaction: Any = dataclasses.field(default=None, repr=False)
    _pool: Any = dataclasses.field(default=None, repr=False)
    _closed: bool = dataclasses.field(default=False, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed or self.connection.is_closed() or not self.connection.is_in_transaction()

    async def execute(
        self,
        text: str,
        params: Sequence[Any] = (),
    ) -> ExecutionResult:
        """Run a statement inside the caller's transaction."""
        if self.closed:
            raise InvalidTransactionState("transaction has already ended")
        try:
            return await _run(self.connection, text, params, self.timeout)
        except Exception as exc:
            raise _wrap(exc) from exc

    async def commit(self) -> None:
        await self._end(commit=True)

    async def rollback(self) -> None:
        await self._end(commit=False)

    async def _end(self, *, commit: bool) -> None:
        if self._transaction is None:
            raise InvalidTransactionState(
                "transaction is owned by the caller; end it where it was opened"
            )
        if self._closed:
            raise InvalidTransactionState("transaction has already ended")
        self._closed = True
        try:
            if commit:
                await self._transaction.commit()
            else:
                await self._transaction.rollback()
        except Exception as exc:
            raise _wrap(exc) from exc
        finally:
            if self._pool is not None:
                await self._pool.release(self.connection)


async def _run(
    conn: Any,
    text: str,
    params: Sequence[Any],
    timeout: float | None,
) -> ExecutionResult:
    # conn.fetch / conn.execute go through asyncpg's per-connection statement cache
    if _ROW_RETURNING.search(text):
        records = await conn.fetch(text, *params, timeout=timeout)
        rows = [dict(r) for r in records]
        return ExecutionResult(rows=rows, row_count=len(rows))
    status = await conn.execute(text, *params, timeout=timeout)
    return ExecutionResult(rows=[], row_count=_row_count(status, []))


def _row_count(status: str | None, rows: list[dict[str, Any]]) -> int:
    """Parse the command tag ("UPDATE 3", "INSERT 0 2"); fall back to len(rows)."""
    if status:
        last = status.rsplit(" ", 1)[-1]
        if last.isdigit() and " " in status:
            return int(last)
    return len(rows)


def _wrap(exc: Exception) -> ExecutionError:
    if isinstance(exc, ExecutionError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return ExecutionError("57014", "statement timed out")
    code = getattr(exc, "sqlstate", None) or ""
    return ExecutionError(str(code), str(exc) or type(exc).__name__)


def _import_asyncpg() -> Any:
    try:
        import asyncpg
    except ImportError as exc:
        raise ImportError(
            "AsyncpgPoolPort requires asyncpg. Install with: pip install 'txqueue[postgres]'"
        ) from exc
    return asyncpg
