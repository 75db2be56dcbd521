"""
SQLiteDatabase — sqlite3-backed execution ports for single-machine use and tests.

Suitable for local development, single-host deployments and integration
tests. Multiple processes may share one database file; WAL mode lets readers
proceed while one writer holds the lock.

Pool
----
A fixed number of connections is opened lazily and kept in an asyncio.Queue.
Every call runs the blocking sqlite3 work in a thread-pool worker
(asyncio.to_thread) and holds its connection until that thread returns, even
if the awaiting task is cancelled.

Variants
--------
SQLiteDatabase     — pooled port. Connections are in auto-commit mode, so every
                     statement is its own implicit transaction.
SQLiteTransaction  — transactional port returned by begin()/transaction(). Holds
                     one connection inside BEGIN IMMEDIATE until commit() or
                     rollback(); afterwards execute() raises
                     InvalidTransactionState.

Atomicity
---------
SQLite takes the database write lock at the start of every UPDATE statement,
so the lease statement (a single UPDATE ... RETURNING) cannot hand the same
row to two callers. Requires SQLite >= 3.35 for RETURNING.

Parameters
----------
Placeholders $1..$n are rewritten to SQLite's ?1..?n. datetime values are
bound as fixed-width UTC text (2024-01-01T00:00:00.000000+00:00) so that text
comparison in SQL is chronological comparison.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from txqueue.core.plans import SQLITE
from txqueue.domain.errors import ExecutionError, InvalidTransactionState
from txqueue.ports.sql import ExecutionResult

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$(\d+)")


@dataclasses.dataclass
class SQLiteDatabase:
    """
    Pooled SQLite execution port.

    Parameters
    ----------
    path         : database file (parent directory created if absent)
    pool_size    : number of connections kept open
    busy_timeout : how long a statement waits for another writer's lock
    """

    path: Path
    pool_size: int = 4
    busy_timeout: timedelta = timedelta(seconds=30)

    dialect: str = dataclasses.field(default=SQLITE, init=False)

    _pool: asyncio.Queue[sqlite3.Connection] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _connections: list[sqlite3.Connection] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _open_lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def open(self) -> None:
        """Open the connection pool. Called implicitly by the first execute()."""
        async with self._open_lock:
            if self._pool is not None:
                return
            pool: asyncio.Queue[sqlite3.Connection] = asyncio.Queue()
            for _ in range(self.pool_size):
                conn = await asyncio.to_thread(self._connect)
                self._connections.append(conn)
                pool.put_nowait(conn)
            self._pool = pool
            logger.debug("Opened %d SQLite connections to %s", self.pool_size, self.path)

    async def close(self) -> None:
        """Close every connection, including ones held by open transactions."""
        async with self._open_lock:
            connections, self._connections = self._connections, []
            self._pool = None
            for conn in connections:
                await asyncio.to_thread(conn.close)

    async def __aenter__(self) -> SQLiteDatabase:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------ #
    # Execution                                                            #
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        text: str,
        params: Sequence[Any] = (),
    ) -> ExecutionResult:
        """Run one auto-committed statement on a pooled connection."""
        conn = await self._acquire()
        task = asyncio.ensure_future(asyncio.to_thread(_execute, conn, text, params))
        task.add_done_callback(lambda _: self._release(conn))
        return await asyncio.shield(task)

    async def begin(self) -> SQLiteTransaction:
        """Open a transaction on a dedicated connection (BEGIN IMMEDIATE)."""
        conn = await self._acquire()
        try:
            await asyncio.to_thread(_execute, conn, "BEGIN IMMEDIATE", ())
        except BaseException:
            self._release(conn)
            raise
        return SQLiteTransaction(database=self, connection=conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteTransaction]:
        """
        Commit on success, roll back on exception.

            async with db.transaction() as tx:
                await tx.execute("INSERT INTO users (email) VALUES ($1)", [email])
                await publish(tx, "welcome-email", {"email": email})
        """
        tx = await self.begin()
        try:
            yield tx
        except BaseException:
            if not tx.closed:
                await tx.rollback()
            raise
        if not tx.closed:
            await tx.commit()

    # ------------------------------------------------------------------ #
    # Pool internals                                                       #
    # ------------------------------------------------------------------ #

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout.total_seconds(),
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    async def _acquire(self) -> sqlite3.Connection:
        if self._pool is None:
            await self.open()
        assert self._pool is not None
        return await self._pool.get()

    def _release(self, conn: sqlite3.Connection) -> None:
        if self._pool is not None and conn in self._connections:
            self._pool.put_nowait(conn)


@dataclasses.dataclass
class SQLiteTransaction:
    """
    Transactional SQLite execution port bound to one open transaction.

    Never shared between concurrent tasks. commit()/rollback() end the
    transaction and return the connection to the pool.
    """

    database: SQLiteDatabase
    connection: sqlite3.Connection

    dialect: str = dataclasses.field(default=SQLITE, init=False)

    _closed: bool = dataclasses.field(default=False, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    async def execute(
        self,
        text: str,
        params: Sequence[Any] = (),
    ) -> ExecutionResult:
        """Run a statement inside the transaction. Nothing is committed here."""
        if self._closed:
            raise InvalidTransactionState("transaction has already ended")
        return await asyncio.shield(
            asyncio.ensure_future(
                asyncio.to_thread(_execute, self.connection, text, params)
            )
        )

    async def commit(self) -> None:
        await self._end("COMMIT")

    async def rollback(self) -> None:
        await self._end("ROLLBACK")

    async def _end(self, statement: str) -> None:
        if self._closed:
            raise InvalidTransactionState("transaction has already ended")
        self._closed = True
        try:
            await asyncio.to_thread(_execute, self.connection, statement, ())
        except ExecutionError:
            if self.connection.in_transaction:
                await asyncio.to_thread(_rollback_quietly, self.connection)
            raise
        finally:
            self.database._release(self.connection)


# ---------------------------------------------------------------------- #
# Synchronous implementations (executed in a thread-pool worker)         #
# ---------------------------------------------------------------------- #


def _bind(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")
    return value


def _execute(
    conn: sqlite3.Connection,
    text: str,
    params: Sequence[Any],
) -> ExecutionResult:
    sql = _PLACEHOLDER.sub(r"?\1", text)
    try:
        cursor = conn.execute(sql, [_bind(p) for p in params])
        try:
            rows = [dict(r) for r in cursor.fetchall()]
            if cursor.description is not None:
                row_count = len(rows)
            else:
                row_count = max(cursor.rowcount, 0)
        finally:
            cursor.close()
    except sqlite3.Error as exc:
        code = getattr(exc, "sqlite_errorname", None) or type(exc).__name__
        raise ExecutionError(code, str(exc)) from exc
    return ExecutionResult(rows=rows, row_count=row_count)


def _rollback_quietly(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error:
        logger.warning("ROLLBACK after failed transaction end did not succeed", exc_info=True)
