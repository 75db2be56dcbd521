"""
txqueue — transactional job queue on a relational database.

Jobs are rows. Publishing is an INSERT, so it can ride along in the same
database transaction as the business write that caused it: if the
transaction commits, workers see the job; if it rolls back, the job never
existed.

Every statement goes through an execution port. A pooled port runs each
statement on its own; a transactional port runs it inside a transaction the
caller owns. publish() takes either.

Workers lease jobs with one atomic conditional UPDATE (FOR UPDATE SKIP LOCKED
on PostgreSQL), so any number of workers and processes can share a queue.
Delivery is at-least-once: a worker that dies mid-job leaves an expired lease
that the Sweeper turns back into a retry, or a dead job once its attempts are
used up.

Quick start
-----------
    import asyncio
    from txqueue import SQLiteDatabase, TxQueue

    async def main():
        db = SQLiteDatabase("queue.db")
        await db.execute(
            "CREATE TABLE IF NOT EXISTS users"
            " (id INTEGER PRIMARY KEY, email TEXT UNIQUE NOT NULL)"
        )
        async with TxQueue(db) as q:
            await q.create_queue("emails")
            await q.subscribe("welcome-email", "emails")

            async with db.transaction() as tx:
                await tx.execute(
                    "INSERT INTO users (email) VALUES ($1)", ["john@example.com"]
                )
                await q.publish(
                    "welcome-email", {"email": "john@example.com"}, port=tx
                )

            async def handler(job):
                print(f"received job {job.id} with data {job.payload}")

            await q.work("emails", handler)
            await asyncio.sleep(5)

    asyncio.run(main())

Execution ports
---------------
Built-in adapters:
  - SQLiteDatabase / SQLiteTransaction       — sqlite3, no extra deps
  - AsyncpgPoolPort / AsyncpgTransactionPort — PostgreSQL
                                               (pip install "txqueue[postgres]")

Custom adapters only need to implement the SqlExecutionPort protocol:
  dialect: str
  async def execute(text, params=()) -> ExecutionResult

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (Job, Queue, QueueConfig) and errors
  ports/    — Protocol interfaces (SqlExecutionPort, TransactionHandle)
  core/     — business logic (publisher, worker, sweeper, TxQueue facade)
  adapters/ — concrete execution ports
"""
from __future__ import annotations

from txqueue.adapters.sql.sqlite import SQLiteDatabase, SQLiteTransaction
from txqueue.core.engine import TxQueue
from txqueue.core.heartbeat import HeartbeatManager
from txqueue.core.schema import ensure_schema
from txqueue.core.sweeper import Sweeper, SweepResult
from txqueue.core.worker import Worker, WorkerState
from txqueue.domain.errors import (
    ConfigConflict,
    ExecutionError,
    HandlerError,
    InvalidTransactionState,
    JobNotFoundError,
    LeaseExpired,
    LeaseLostError,
    QueueNotFoundError,
    SchemaError,
    TxQueueError,
)
from txqueue.domain.models import Job, JobState, PublishOptions, Queue, QueueConfig
from txqueue.ports.sql import ExecutionResult, SqlExecutionPort, TransactionHandle

__all__ = [
    # Domain models
    "Job",
    "JobState",
    "PublishOptions",
    "Queue",
    "QueueConfig",
    # Errors
    "TxQueueError",
    "ConfigConflict",
    "ExecutionError",
    "HandlerError",
    "InvalidTransactionState",
    "JobNotFoundError",
    "LeaseExpired",
    "LeaseLostError",
    "QueueNotFoundError",
    "SchemaError",
    # Ports (for typing custom adapters)
    "ExecutionResult",
    "SqlExecutionPort",
    "TransactionHandle",
    # High-level API
    "TxQueue",
    "Worker",
    "WorkerState",
    "Sweeper",
    "SweepResult",
    "HeartbeatManager",
    "ensure_schema",
    # Built-in execution ports
    "SQLiteDatabase",
    "SQLiteTransaction",
]
