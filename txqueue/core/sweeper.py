"""
Sweeper — reclaim jobs whose lease expired, and purge finished jobs on request.

A worker that crashes, is killed, or is cancelled during shutdown leaves its
jobs ACTIVE. Once lease_expiry has passed, sweep() treats each of them as a
failed attempt (LeaseExpired) and routes it through the same retry /
dead-letter rule the worker uses for handler failures.

Several sweepers may run at once: each reclaim is a conditional update
fenced on (state, attempt, lease_expiry < now), so only one of them wins for
any job and the others see zero affected rows.

Each pass also hands unrouted jobs whose topic has a subscription to one of
its queues (a publish can race the subscribe that would have claimed them).

Retention is explicit: purge() deletes finished jobs older than a cutoff and
is never called implicitly.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import UTC, datetime, timedelta
from types import TracebackType

from txqueue.core import codec, jobs, registry, subscriptions
from txqueue.core.plans import plans_for
from txqueue.domain.errors import ExecutionError, LeaseExpired
from txqueue.domain.models import JobState
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class SweepResult:
    """Outcome of one sweep pass."""

    retried: int = 0
    dead: int = 0
    routed: int = 0

    @property
    def reclaimed(self) -> int:
        return self.retried + self.dead


@dataclasses.dataclass
class Sweeper:
    """
    Periodic lease reclaimer.

    Parameters
    ----------
    port       : pooled execution port
    interval   : time between background sweeps (default 30 s)
    batch_size : expired jobs handled per statement round-trip
    """

    port: SqlExecutionPort
    interval: timedelta = timedelta(seconds=30)
    batch_size: int = 100

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _stopping: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start sweeping in a background task."""
        if self._task is not None:
            raise RuntimeError("Sweeper is already running")
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="txqueue-sweeper")

    async def stop(self) -> None:
        """Signal shutdown and wait for the current pass to finish."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def __aenter__(self) -> Sweeper:
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
    # Operations                                                           #
    # ------------------------------------------------------------------ #

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """
        Reclaim every job whose lease expired before `now`, then route unrouted
        jobs of subscribed topics.
        """
        now = now or datetime.now(UTC)
        plans = plans_for(self.port.dialect)
        retried = dead = 0

        while True:
            result = await self.port.execute(plans.expired, [now, self.batch_size])
            if not result.rows:
                break
            progressed = False
            for row in result.rows:
                job = codec.job_from_row(row)
                config = codec.decode_config(row.get("queue_config"))
                state = await jobs.fail(
                    self.port,
                    job,
                    LeaseExpired(job.id),
                    config,
                    now=now,
                    expired_only=True,
                )
                if state is None:
                    continue
                progressed = True
                if state is JobState.CREATED:
                    retried += 1
                else:
                    dead += 1
            if not progressed or len(result.rows) < self.batch_size:
                break

        outcome = SweepResult(retried=retried, dead=dead, routed=await self._route_stranded())
        if outcome.reclaimed:
            logger.info(
                "Reclaimed %d expired lease(s): %d retried, %d dead",
                outcome.reclaimed,
                retried,
                dead,
            )
        return outcome

    async def purge(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Delete completed, failed and dead jobs finished more than `older_than` ago."""
        cutoff = (now or datetime.now(UTC)) - older_than
        result = await self.port.execute(plans_for(self.port.dialect).purge, [cutoff])
        if result.row_count:
            logger.info("Purged %d finished job(s) older than %s", result.row_count, cutoff.isoformat())
        return result.row_count

    # ------------------------------------------------------------------ #
    # Internal machinery                                                   #
    # ------------------------------------------------------------------ #

    async def _route_stranded(self) -> int:
        result = await self.port.execute(plans_for(self.port.dialect).stranded_topics)
        routed = 0
        for row in result.rows:
            queue = await registry.get_queue(self.port, row["queue_name"])
            routed += await subscriptions.claim_unrouted(self.port, row["topic"], queue)
        return routed

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep()
            except ExecutionError:
                logger.exception("Sweep failed; retrying in %s", self.interval)
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.interval.total_seconds()
                )
            except TimeoutError:
                pass
