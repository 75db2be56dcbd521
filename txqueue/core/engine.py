"""
TxQueue — the queue engine facade.

TxQueue is an async context manager that ensures the schema and starts a
background Sweeper on __aenter__, and on __aexit__ stops every Worker it
started (letting in-flight jobs finish) before stopping the sweeper.

Usage
-----
    from txqueue import SQLiteDatabase, TxQueue

    db = SQLiteDatabase("queue.db")
    await db.execute("CREATE TABLE IF NOT EXISTS users (id INTEGER PRIMARY KEY, email TEXT)")
    async with TxQueue(db) as q:
        await q.create_queue("emails")
        await q.subscribe("welcome-email", "emails")

        async with db.transaction() as tx:
            await tx.execute("INSERT INTO users (email) VALUES ($1)", ["a@b.com"])
            await q.publish("welcome-email", {"email": "a@b.com"}, port=tx)
        # committed: the job is now visible to workers

        await q.work("emails", send_welcome_email)

Every data operation takes an optional keyword `port`. Without it the
engine's own pooled port is used and the statement commits on its own; with a
transactional port the statement joins that transaction.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import timedelta
from types import TracebackType
from typing import Any

from txqueue.core import jobs, publisher, registry, subscriptions
from txqueue.core.schema import ensure_schema
from txqueue.core.sweeper import Sweeper, SweepResult
from txqueue.core.worker import Handler, Worker
from txqueue.domain.errors import TxQueueError
from txqueue.domain.models import Job, JobState, PublishOptions, Queue, QueueConfig
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class TxQueue:
    """
    Engine facade over one pooled execution port.

    Parameters
    ----------
    port           : pooled execution port used when a call passes no port
    sweep_interval : time between background lease sweeps
    run_sweeper    : start the background Sweeper on start()
    worker_timeout : how long stop() waits for each worker to drain
                     (None waits for in-flight jobs to finish)
    """

    port: SqlExecutionPort
    sweep_interval: timedelta = timedelta(seconds=30)
    run_sweeper: bool = True
    worker_timeout: timedelta | None = None

    _sweeper: Sweeper = dataclasses.field(init=False, repr=False)
    _workers: list[Worker] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _started: bool = dataclasses.field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self._sweeper = Sweeper(port=self.port, interval=self.sweep_interval)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Create the schema if needed and start the sweeper."""
        if self._started:
            raise RuntimeError("TxQueue is already started")
        await ensure_schema(self.port)
        if self.run_sweeper:
            await self._sweeper.start()
        self._started = True
        logger.info("TxQueue started")

    async def stop(self) -> None:
        """Stop every worker started through work(), then the sweeper."""
        workers, self._workers = self._workers, []
        for worker in workers:
            await worker.stop(self.worker_timeout)
        if self.run_sweeper and self._started:
            await self._sweeper.stop()
        self._started = False
        logger.info("TxQueue stopped")

    async def __aenter__(self) -> TxQueue:
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
    # Queues and subscriptions                                             #
    # ------------------------------------------------------------------ #

    async def create_queue(
        self,
        name: str,
        config: QueueConfig | None = None,
        *,
        port: SqlExecutionPort | None = None,
    ) -> Queue:
        """Create or fetch a queue. Raises ConfigConflict on a material mismatch."""
        return await registry.create_queue(port or self.port, name, config)

    async def get_queue(self, name: str, *, port: SqlExecutionPort | None = None) -> Queue:
        return await registry.get_queue(port or self.port, name)

    async def queue_size(self, name: str, *, port: SqlExecutionPort | None = None) -> int:
        return await registry.queue_size(port or self.port, name)

    async def subscribe(
        self,
        topic: str,
        queue_name: str,
        *,
        port: SqlExecutionPort | None = None,
    ) -> int:
        """Bind topic → queue. Returns the number of unrouted jobs claimed."""
        return await subscriptions.subscribe(port or self.port, topic, queue_name)

    async def unsubscribe(
        self,
        topic: str,
        queue_name: str,
        *,
        port: SqlExecutionPort | None = None,
    ) -> bool:
        return await subscriptions.unsubscribe(port or self.port, topic, queue_name)

    # ------------------------------------------------------------------ #
    # Publishing                                                           #
    # ------------------------------------------------------------------ #

    async def publish(
        self,
        topic: str,
        payload: Any,
        options: PublishOptions | None = None,
        *,
        port: SqlExecutionPort | None = None,
    ) -> list[str]:
        """Publish to every queue subscribed to `topic`. Returns the job ids."""
        return await publisher.publish(port or self.port, topic, payload, options)

    async def send(
        self,
        queue_name: str,
        payload: Any,
        options: PublishOptions | None = None,
        *,
        port: SqlExecutionPort | None = None,
    ) -> str:
        """Enqueue directly into one queue. Returns the job id."""
        return await publisher.send(port or self.port, queue_name, payload, options)

    # ------------------------------------------------------------------ #
    # Consuming                                                            #
    # ------------------------------------------------------------------ #

    async def fetch(
        self,
        queue_name: str,
        *,
        batch_size: int = 1,
        port: SqlExecutionPort | None = None,
    ) -> list[Job]:
        """Lease up to batch_size jobs for manual processing."""
        port = port or self.port
        queue = await registry.get_queue(port, queue_name)
        return await jobs.lease(port, queue, batch_size)

    async def complete(self, job: Job, *, port: SqlExecutionPort | None = None) -> bool:
        """Complete a fetched job. Returns False if its lease was lost."""
        port = port or self.port
        config = await self._config_for(job, port)
        return await jobs.complete(port, job, delete=config.delete_on_complete)

    async def fail(
        self,
        job: Job,
        error: BaseException | str,
        *,
        retry: bool = True,
        port: SqlExecutionPort | None = None,
    ) -> JobState | None:
        """Fail a fetched job; retries or dead-letters per its queue config."""
        port = port or self.port
        config = await self._config_for(job, port)
        return await jobs.fail(port, job, error, config, retry=retry)

    async def extend_lease(
        self,
        job: Job,
        duration: timedelta | None = None,
        *,
        port: SqlExecutionPort | None = None,
    ) -> Job:
        """Extend a fetched job's lease (default: its queue's lease_duration)."""
        port = port or self.port
        if duration is None:
            duration = (await self._config_for(job, port)).lease_duration
        return await jobs.extend_lease(port, job, duration)

    async def get_job(self, job_id: str, *, port: SqlExecutionPort | None = None) -> Job:
        return await jobs.get_job(port or self.port, job_id)

    async def work(
        self,
        queue_name: str,
        handler: Handler,
        *,
        batch_size: int = 1,
        heartbeat_interval: timedelta | None = None,
    ) -> Worker:
        """Start a Worker on `queue_name`; it is stopped by stop()."""
        queue = await registry.get_queue(self.port, queue_name)
        worker = Worker(
            port=self.port,
            queue=queue,
            handler=handler,
            batch_size=batch_size,
            heartbeat_interval=heartbeat_interval,
        )
        await worker.start()
        self._workers.append(worker)
        return worker

    # ------------------------------------------------------------------ #
    # Maintenance                                                          #
    # ------------------------------------------------------------------ #

    async def sweep(self) -> SweepResult:
        """Run one lease sweep now."""
        return await self._sweeper.sweep()

    async def purge(self, older_than: timedelta) -> int:
        """Delete finished jobs older than `older_than`."""
        return await self._sweeper.purge(older_than)

    async def _config_for(self, job: Job, port: SqlExecutionPort) -> QueueConfig:
        if job.queue_name is None:
            raise TxQueueError(f"Job {job.id!r} is not routed to a queue")
        return (await registry.get_queue(port, job.queue_name)).config
