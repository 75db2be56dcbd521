"""
HeartbeatManager — async context manager that keeps a job's lease alive.

A handler that may outlive its queue's lease_duration wraps the work in
HeartbeatManager, which pushes lease_expiry forward periodically so the
sweeper does not reclaim the job as expired.

Usage
-----
    async with TxQueue(db) as q:
        queue = await q.create_queue("render")
        [job] = await q.fetch("render")

        async with HeartbeatManager(q, job, interval=timedelta(seconds=30)):
            await render(job.payload)

        await q.complete(job)

Workers created with heartbeat_interval do this automatically.

If the lease has been lost (the job was reclaimed), the manager stops
silently; the later complete() reports the loss. Store errors are logged and
the next beat tries again.

HeartbeatManager is typed against the structural Protocol _ExtendsLease, so
it works with TxQueue and Worker without any shared base class.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import timedelta
from types import TracebackType
from typing import Protocol

from txqueue.domain.errors import ExecutionError, LeaseLostError
from txqueue.domain.models import Job

logger = logging.getLogger(__name__)


class _ExtendsLease(Protocol):
    """Structural Protocol — any object with an async extend_lease(job) method."""

    async def extend_lease(self, job: Job) -> Job: ...


@dataclasses.dataclass
class HeartbeatManager:
    """
    Extends the lease of a single job at a fixed interval.

    Parameters
    ----------
    queue    : any object with async extend_lease(job: Job) -> Job
    job      : the leased job to keep alive
    interval : time between extensions (default 60 seconds); keep it well
               below the queue's lease_duration
    """

    queue: _ExtendsLease
    job: Job
    interval: timedelta = timedelta(seconds=60)

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    async def __aenter__(self) -> HeartbeatManager:
        self._task = asyncio.create_task(
            self._beat(), name=f"txqueue-heartbeat-{self.job.id}"
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                self.job = await self.queue.extend_lease(self.job)
            except LeaseLostError:
                logger.warning("Stopped heartbeat for job %s: lease lost", self.job.id)
                return
            except ExecutionError:
                logger.warning("Heartbeat for job %s failed; retrying", self.job.id, exc_info=True)
