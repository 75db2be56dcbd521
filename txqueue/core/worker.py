"""
Worker — poll one queue, lease jobs, run a handler, record the outcome.

State machine per worker
------------------------
    IDLE → LEASING → EXECUTING → IDLE        (jobs found)
    IDLE → LEASING → IDLE                    (nothing eligible; sleep poll_interval)
    any  → STOPPED                           (stop() called)

Leasing is a single atomic statement (see jobs.lease), so any number of
workers in any number of processes can poll the same queue without further
coordination.

Handlers
--------
    async def handler(job: Job) -> Any

Returning normally completes the job. Raising any exception fails the
attempt: the job is retried after the queue's backoff or dead-lettered once
its attempts are used up. Raise HandlerError(..., retryable=False) to fail
the job without retrying. Handler exceptions never stop the loop.

Store errors while leasing are logged and retried with exponential backoff
(poll_interval × 2ⁿ, capped at max_error_backoff). Any other TxQueueError
while leasing is logged and ends the loop; the worker is then STOPPED and
`running` is False.

Shutdown
--------
stop() stops leasing and waits for the in-flight batch to finish. With a
timeout, handlers still running afterwards are cancelled; their leases stay
ACTIVE until they expire and the sweeper reclaims them.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from enum import Enum
from types import TracebackType
from typing import Any

from txqueue.core import jobs
from txqueue.core.heartbeat import HeartbeatManager
from txqueue.domain.errors import ExecutionError, HandlerError, TxQueueError
from txqueue.domain.models import Job, Queue
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Any]]


class WorkerState(str, Enum):
    IDLE = "idle"
    LEASING = "leasing"
    EXECUTING = "executing"
    STOPPED = "stopped"


@dataclasses.dataclass
class Worker:
    """
    Polling worker bound to one queue.

    Parameters
    ----------
    port               : pooled execution port (never a transactional one)
    queue              : handle returned by create_queue()/get_queue()
    handler            : async callable invoked once per leased job
    batch_size         : jobs leased per poll; a batch runs concurrently
    heartbeat_interval : extend leases of running jobs at this interval
                         (None disables heartbeats)
    max_error_backoff  : upper bound of the delay after store errors
    """

    port: SqlExecutionPort
    queue: Queue
    handler: Handler
    batch_size: int = 1
    heartbeat_interval: timedelta | None = None
    max_error_backoff: timedelta = timedelta(seconds=30)

    state: WorkerState = dataclasses.field(default=WorkerState.IDLE, init=False)
    completed: int = dataclasses.field(default=0, init=False)
    failed: int = dataclasses.field(default=0, init=False)

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _stopping: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start polling in a background task."""
        if self._task is not None:
            raise RuntimeError("Worker is already running")
        self._stopping.clear()
        self.state = WorkerState.IDLE
        self._task = asyncio.create_task(
            self._run(), name=f"txqueue-worker-{self.queue.name}"
        )
        logger.info("Worker started on queue %r", self.queue.name)

    async def stop(self, timeout: timedelta | None = None) -> None:
        """Stop leasing and wait for in-flight jobs (at most `timeout`)."""
        self._stopping.set()
        if self._task is None:
            self.state = WorkerState.STOPPED
            return
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(
                asyncio.shield(task),
                None if timeout is None else timeout.total_seconds(),
            )
        except TimeoutError:
            logger.warning(
                "Worker on queue %r did not drain in time; cancelling in-flight jobs",
                self.queue.name,
            )
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state = WorkerState.STOPPED
        logger.info(
            "Worker stopped on queue %r (%d completed, %d failed)",
            self.queue.name,
            self.completed,
            self.failed,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> Worker:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # ------------------------------------------------------------------ #
    # One poll                                                             #
    # ------------------------------------------------------------------ #

    async def run_once(self) -> int:
        """
        Lease one batch and process it to completion.

        Returns the number of jobs processed (0 when the queue was empty).
        Raises ExecutionError if leasing fails.
        """
        self.state = WorkerState.LEASING
        try:
            leased = await jobs.lease(self.port, self.queue, self.batch_size)
        except BaseException:
            self.state = WorkerState.IDLE
            raise
        if not leased:
            self.state = WorkerState.IDLE
            return 0

        self.state = WorkerState.EXECUTING
        try:
            await asyncio.gather(*(self._process(job) for job in leased))
        finally:
            self.state = WorkerState.IDLE
        return len(leased)

    async def extend_lease(self, job: Job) -> Job:
        """Heartbeat target: push the job's lease by the queue's lease_duration."""
        return await jobs.extend_lease(self.port, job, self.queue.config.lease_duration)

    # ------------------------------------------------------------------ #
    # Internal machinery                                                   #
    # ------------------------------------------------------------------ #

    async def _run(self) -> None:
        poll = self.queue.config.poll_interval.total_seconds()
        errors = 0
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except ExecutionError:
                errors += 1
                delay = min(poll * 2**errors, self.max_error_backoff.total_seconds())
                logger.exception(
                    "Leasing from queue %r failed; retrying in %.1fs",
                    self.queue.name,
                    delay,
                )
                await self._sleep(delay)
                continue
            except TxQueueError:
                self.state = WorkerState.STOPPED
                logger.exception(
                    "Worker on queue %r stopped after an unrecoverable error",
                    self.queue.name,
                )
                return
            errors = 0
            if not processed:
                await self._sleep(poll)

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early when stop() is called."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _process(self, job: Job) -> None:
        try:
            if self.heartbeat_interval is not None:
                async with HeartbeatManager(self, job, self.heartbeat_interval):
                    await self.handler(job)
            else:
                await self.handler(job)
        except Exception as exc:
            self.failed += 1
            retry = not (isinstance(exc, HandlerError) and not exc.retryable)
            logger.warning(
                "Handler failed for job %s on queue %r (attempt %d/%d)",
                job.id,
                self.queue.name,
                job.attempt,
                job.max_attempts,
                exc_info=True,
            )
            try:
                await jobs.fail(self.port, job, exc, self.queue.config, retry=retry)
            except TxQueueError:
                logger.exception(
                    "Could not record failure of job %s; its lease will expire",
                    job.id,
                )
            return

        try:
            if await jobs.complete(
                self.port, job, delete=self.queue.config.delete_on_complete
            ):
                self.completed += 1
        except TxQueueError:
            logger.exception(
                "Could not complete job %s; its lease will expire and it will run again",
                job.id,
            )
