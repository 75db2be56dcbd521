"""
SqlExecutionPort — the single port in txqueue.

Every statement the queue issues goes through an object satisfying this
structural Protocol. No base class or registration is required.

Two variants exist for every store:
  - pooled        — acquires a connection per call; each statement commits on
                    its own (auto-commit)
  - transactional — bound to one open transaction owned by the caller; the
                    statement becomes visible only if that transaction commits

Which variant is passed to publish() decides whether the job commits
immediately or together with the caller's business writes.

Statement contract
------------------
execute(text, params)
  - text uses numbered placeholders $1, $2, ... (adapters translate them)
  - params is a positional sequence; datetime values are timezone-aware UTC
  - returns ExecutionResult(rows, row_count)
  - raises ExecutionError for any driver/store failure
  - raises InvalidTransactionState when a transactional port is used after
    its transaction ended
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable


@dataclasses.dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of one statement.

    rows      : returned records as plain dicts (empty without RETURNING/SELECT)
    row_count : rows affected by DML, or rows returned by a query
    """

    rows: list[dict[str, Any]] = dataclasses.field(default_factory=list)
    row_count: int = 0

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


@runtime_checkable
class SqlExecutionPort(Protocol):
    """
    Minimal interface required by txqueue core.

    Implementing adapters (built-in):
      - SQLiteDatabase / SQLiteTransaction       — sqlite3 via asyncio.to_thread
      - AsyncpgPoolPort / AsyncpgTransactionPort — PostgreSQL via asyncpg
    """

    dialect: str
    """Either "sqlite" or "postgresql"; selects the statement plans."""

    async def execute(
        self,
        text: str,
        params: Sequence[Any] = (),
    ) -> ExecutionResult:
        """
        Run one statement.

        Parameters
        ----------
        text   : SQL with $n placeholders
        params : positional parameter values

        Raises
        ------
        ExecutionError           for connectivity, constraint or syntax failures
        InvalidTransactionState  if the bound transaction has already ended
        """
        ...


@runtime_checkable
class TransactionHandle(SqlExecutionPort, Protocol):
    """
    A transactional execution port that also exposes commit/rollback.

    txqueue never calls commit() or rollback() on a handle it was given; they
    are for the code that opened the transaction.
    """

    @property
    def closed(self) -> bool: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...
