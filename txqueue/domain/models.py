"""
Domain models for txqueue — backed by Pydantic v2.

Pydantic handles:
  - JSON serialization of queue configuration (via codec.py)
  - datetime parsing of rows coming back from the store (ISO-8601 text from
    SQLite, native datetimes from asyncpg)
  - timedelta parsing (seconds or ISO-8601 durations)
  - field validation and type coercion

All models are frozen (immutable). A Job is a snapshot of one row at the time
it was read; the authoritative state lives in the jobs table.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobState(str, Enum):
    """
    Lifecycle states for a job row.

    created → active → completed
                     → created   (retry, visible again after a backoff)
                     → failed    (non-retryable handler failure)
                     → dead      (retry budget exhausted)
    """

    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.DEAD)


class Job(BaseModel):
    """
    One row of the jobs table.

    id            — stable identifier, assigned at publish time
    topic         — name the job was published under
    queue_name    — queue the job is routed to (None while unrouted)
    payload       — arbitrary JSON value
    state         — current lifecycle state
    priority      — lower value runs first (default 0)
    attempt       — number of times the job has been leased
    max_attempts  — attempts allowed before the job is dead-lettered
    visible_after — the job cannot be leased before this instant
    lease_expiry  — end of the current lease (set only while ACTIVE)
    last_error    — description of the most recent failure
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: str
    queue_name: str | None = None
    payload: Any = None
    state: JobState = JobState.CREATED
    priority: int = 0
    attempt: int = 0
    max_attempts: int = 1
    visible_after: datetime = Field(default_factory=lambda: datetime.now(UTC))
    lease_expiry: datetime | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @field_validator(
        "visible_after",
        "lease_expiry",
        "created_at",
        "started_at",
        "finished_at",
        mode="after",
    )
    @classmethod
    def _as_utc(cls, v: datetime | None) -> datetime | None:
        """Rows stored without an offset are UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @property
    def retries_left(self) -> int:
        return max(self.max_attempts - self.attempt, 0)


class QueueConfig(BaseModel):
    """
    Per-queue delivery policy, persisted as JSON in queues.config.

    retry_limit        — failed attempts that are retried (max_attempts = retry_limit + 1)
    retry_delay        — delay before a failed job becomes visible again
    retry_backoff      — double retry_delay for every further attempt
    retry_delay_max    — upper bound for the backed-off delay
    lease_duration     — how long a worker owns a leased job
    dead_letter        — queue receiving a copy of every job that dies
    delete_on_complete — delete completed rows instead of keeping them
    poll_interval      — worker sleep between empty polls (not material)
    """

    model_config = ConfigDict(frozen=True)

    retry_limit: int = Field(default=2, ge=0)
    retry_delay: timedelta = timedelta(0)
    retry_backoff: bool = False
    retry_delay_max: timedelta | None = None
    lease_duration: timedelta = timedelta(minutes=15)
    dead_letter: str | None = None
    delete_on_complete: bool = False
    poll_interval: timedelta = timedelta(seconds=2)

    @field_validator("lease_duration", "poll_interval")
    @classmethod
    def _positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("must be a positive duration")
        return v

    @field_validator("retry_delay")
    @classmethod
    def _non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("must not be negative")
        return v

    @property
    def max_attempts(self) -> int:
        return self.retry_limit + 1

    def material(self) -> dict[str, Any]:
        """Fields that must match when a queue is declared again."""
        return self.model_dump(exclude={"poll_interval"})

    def retry_delay_for(self, attempt: int) -> timedelta:
        """Delay before the retry that follows the given (1-based) attempt."""
        if not self.retry_backoff or attempt < 1:
            delay = self.retry_delay
        else:
            delay = self.retry_delay * (2 ** (attempt - 1))
        if self.retry_delay_max is not None:
            delay = min(delay, self.retry_delay_max)
        return delay


class Queue(BaseModel):
    """Handle for a registered queue. Equal handles describe the same queue."""

    model_config = ConfigDict(frozen=True)

    name: str
    config: QueueConfig = QueueConfig()
    created_at: datetime

    @field_validator("created_at", mode="after")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)


class PublishOptions(BaseModel):
    """
    Per-job options for publish() and send().

    start_after — delay (timedelta) or absolute UTC instant before which the
                  job stays invisible to workers
    priority    — lower value runs first
    retry_limit — overrides the queue's retry_limit for this job
    """

    model_config = ConfigDict(frozen=True)

    start_after: timedelta | datetime | None = None
    priority: int = 0
    retry_limit: int | None = Field(default=None, ge=0)

    def visible_after(self, now: datetime) -> datetime:
        match self.start_after:
            case None:
                return now
            case timedelta():
                return now + self.start_after
            case datetime():
                if self.start_after.tzinfo is None:
                    return self.start_after.replace(tzinfo=UTC)
                return self.start_after
            case _:
                raise TypeError(f"unsupported start_after {self.start_after!r}")

    def max_attempts(self, config: QueueConfig | None) -> int:
        if self.retry_limit is not None:
            return self.retry_limit + 1
        return (config or QueueConfig()).max_attempts
