"""
Exception hierarchy for txqueue.

TxQueueError
├── ExecutionError          — store unreachable or statement rejected (retryable)
├── InvalidTransactionState — transactional port used after its transaction ended
├── ConfigConflict          — queue re-declared with a different material config
├── SchemaError             — DDL failed for lack of privileges (fatal)
├── HandlerError            — business failure raised by a job handler
├── LeaseExpired            — job lease ran out before completion (sweeper)
├── LeaseLostError          — worker no longer owns the lease it acts on
├── JobNotFoundError        — job id not present in the jobs table
└── QueueNotFoundError      — queue name not registered
"""

from __future__ import annotations

from typing import Any


class TxQueueError(Exception):
    """Base class for all txqueue exceptions."""


class ExecutionError(TxQueueError):
    """
    Wraps a failure reported by the relational store or its driver.

    Attributes
    ----------
    code : str
        SQLSTATE (Postgres) or error name (SQLite); "" when unknown.
    message : str
        Human readable description from the driver.
    """

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}" if code else message)


class InvalidTransactionState(TxQueueError):
    """Raised when a transactional port is used after commit or rollback."""


class ConfigConflict(TxQueueError):
    """Raised when create_queue() finds an existing queue with a different config."""

    def __init__(self, name: str, existing: Any, requested: Any) -> None:
        self.name = name
        self.existing = existing
        self.requested = requested
        super().__init__(
            f"Queue {name!r} already exists with a different configuration"
        )


class SchemaError(TxQueueError):
    """Raised when the queue tables cannot be created (missing privileges)."""

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class HandlerError(TxQueueError):
    """
    Business failure raised from inside a job handler.

    Handlers may raise any exception; raising HandlerError explicitly lets the
    handler opt out of retries with retryable=False.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class LeaseExpired(TxQueueError):
    """A job's lease ran out without completion. Counts as one failed attempt."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Lease on job {job_id!r} expired before completion")


class LeaseLostError(TxQueueError):
    """The job is no longer active under the attempt this worker leased."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Lease on job {job_id!r} is no longer held")


class JobNotFoundError(TxQueueError):
    """Raised when a job id is not present in the jobs table."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id!r} not found")


class QueueNotFoundError(TxQueueError):
    """Raised when a queue name has not been created."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Queue {name!r} not found")
