"""
Job transitions — the single-statement state changes behind every API.

    lease         created → active         (batch, FOR UPDATE SKIP LOCKED)
    complete      active  → completed      (or row deleted)
    fail          active  → created        (retry after backoff)
                  active  → dead           (attempts exhausted; dead-letter copy)
                  active  → failed         (retry=False)
    extend_lease  active  → active         (lease_expiry pushed forward)

Transitions out of "active" are fenced on the attempt number returned by
lease(). If a lease expired and the job was reclaimed (and possibly leased
again), the stale holder's statement matches no row and the call reports
that instead of touching the newer attempt.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from txqueue.core import codec
from txqueue.core.plans import plans_for
from txqueue.core.publisher import send
from txqueue.domain.errors import JobNotFoundError, LeaseLostError, QueueNotFoundError
from txqueue.domain.models import Job, JobState, PublishOptions, Queue, QueueConfig
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)


async def lease(
    port: SqlExecutionPort,
    queue: Queue,
    batch_size: int = 1,
    now: datetime | None = None,
) -> list[Job]:
    """
    Atomically claim up to `batch_size` visible jobs of `queue`.

    Claimed jobs are ACTIVE with attempt incremented and
    lease_expiry = now + queue.config.lease_duration. Returns [] when nothing
    is eligible.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    now = now or datetime.now(UTC)
    expiry = now + queue.config.lease_duration
    result = await port.execute(
        plans_for(port.dialect).lease,
        [queue.name, now, expiry, batch_size],
    )
    jobs = [codec.job_from_row(row) for row in result.rows]
    jobs.sort(key=lambda j: (j.priority, j.created_at, j.id))
    for job in jobs:
        logger.debug("Leased job %s (attempt %d/%d)", job.id, job.attempt, job.max_attempts)
    return jobs


async def complete(
    port: SqlExecutionPort,
    job: Job,
    *,
    delete: bool = False,
    now: datetime | None = None,
) -> bool:
    """
    Mark a leased job completed (or delete it). Returns False if the lease
    was lost in the meantime.
    """
    plans = plans_for(port.dialect)
    if delete:
        result = await port.execute(plans.complete_delete, [job.id, job.attempt])
    else:
        result = await port.execute(
            plans.complete, [job.id, job.attempt, now or datetime.now(UTC)]
        )
    if not result.row_count:
        logger.warning("Could not complete job %s: lease no longer held", job.id)
        return False
    logger.debug("Completed job %s", job.id)
    return True


async def fail(
    port: SqlExecutionPort,
    job: Job,
    error: BaseException | str,
    config: QueueConfig,
    *,
    retry: bool = True,
    now: datetime | None = None,
    expired_only: bool = False,
) -> JobState | None:
    """
    Record a failed attempt and move the job on.

    Returns the new state (CREATED for a scheduled retry, DEAD or FAILED), or
    None when the fence no longer matches. With expired_only=True the update
    also requires the lease to have expired at `now` (used by the sweeper, so
    a heartbeat that extended the lease wins the race).
    """
    now = now or datetime.now(UTC)
    message = describe_error(error)
    plans = plans_for(port.dialect)

    if retry and job.attempt < job.max_attempts:
        visible_after = now + config.retry_delay_for(job.attempt)
        params: list[object] = [job.id, job.attempt, visible_after, message]
        if expired_only:
            params.append(now)
        result = await port.execute(plans.retry(expired_only=expired_only), params)
        if not result.row_count:
            return None
        logger.info(
            "Job %s failed attempt %d/%d, retrying at %s: %s",
            job.id,
            job.attempt,
            job.max_attempts,
            visible_after.isoformat(),
            message,
        )
        return JobState.CREATED

    state = JobState.DEAD if retry else JobState.FAILED
    params = [job.id, job.attempt, state.value, now, message]
    if expired_only:
        params.append(now)
    result = await port.execute(plans.finish(expired_only=expired_only), params)
    if not result.row_count:
        return None
    logger.warning("Job %s is %s after %d attempt(s): %s", job.id, state.value, job.attempt, message)

    if state is JobState.DEAD and config.dead_letter:
        await _dead_letter(port, job, config.dead_letter)
    return state


async def extend_lease(
    port: SqlExecutionPort,
    job: Job,
    duration: timedelta,
    now: datetime | None = None,
) -> Job:
    """
    Push the lease of an ACTIVE job to now + duration.

    Returns the job with its new lease_expiry. Raises LeaseLostError when the
    job is no longer active under this attempt.
    """
    expiry = (now or datetime.now(UTC)) + duration
    result = await port.execute(
        plans_for(port.dialect).extend_lease, [job.id, job.attempt, expiry]
    )
    if not result.row_count:
        raise LeaseLostError(job.id)
    return job.model_copy(update={"lease_expiry": expiry})


async def get_job(port: SqlExecutionPort, job_id: str) -> Job:
    """Read one job. Raises JobNotFoundError."""
    result = await port.execute(plans_for(port.dialect).get_job, [job_id])
    row = result.first()
    if row is None:
        raise JobNotFoundError(job_id)
    return codec.job_from_row(row)


def describe_error(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        return f"{type(error).__name__}: {text}" if text else type(error).__name__
    return error


async def _dead_letter(port: SqlExecutionPort, job: Job, queue_name: str) -> None:
    try:
        copy_id = await send(port, queue_name, job.payload, PublishOptions(priority=job.priority))
    except QueueNotFoundError:
        logger.error("Dead-letter queue %r for job %s does not exist", queue_name, job.id)
        return
    logger.info("Dead-lettered job %s into queue %r as %s", job.id, queue_name, copy_id)
