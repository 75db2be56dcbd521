"""
Publisher — insert job rows, optionally inside the caller's transaction.

Pass a transactional port and the insert becomes part of that transaction:
workers see the job only once it commits, and a rollback leaves no row behind.
This is plain transaction isolation; the publisher never compensates.

Fan-out happens here: publish() writes one row per subscribed queue with a
single multi-row INSERT, so the copies appear together or not at all.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from txqueue.core import codec
from txqueue.core.plans import plans_for
from txqueue.core.registry import get_queue
from txqueue.core.subscriptions import subscribed_queues
from txqueue.domain.models import PublishOptions, QueueConfig
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)


async def publish(
    port: SqlExecutionPort,
    topic: str,
    payload: Any,
    options: PublishOptions | None = None,
) -> list[str]:
    """
    Publish `payload` under `topic`.

    Returns the ids of the created jobs: one per subscribed queue, or a single
    unrouted job when no queue is subscribed yet.
    """
    if not topic:
        raise ValueError("topic must not be empty")
    options = options or PublishOptions()
    queues = await subscribed_queues(port, topic)

    targets: list[tuple[str | None, QueueConfig | None]]
    if queues:
        targets = [(q.name, q.config) for q in queues]
    else:
        targets = [(None, None)]
        logger.debug("No subscription for topic %r; storing job unrouted", topic)

    ids = await _insert(port, topic, payload, options, targets)
    logger.debug("Published %d job(s) to topic %r", len(ids), topic)
    return ids


async def send(
    port: SqlExecutionPort,
    queue_name: str,
    payload: Any,
    options: PublishOptions | None = None,
) -> str:
    """
    Enqueue `payload` directly into `queue_name` (the queue name is the topic).

    Raises QueueNotFoundError if the queue does not exist.
    """
    options = options or PublishOptions()
    queue = await get_queue(port, queue_name)
    [job_id] = await _insert(port, queue_name, payload, options, [(queue.name, queue.config)])
    logger.debug("Sent job %s to queue %r", job_id, queue_name)
    return job_id


async def _insert(
    port: SqlExecutionPort,
    topic: str,
    payload: Any,
    options: PublishOptions,
    targets: list[tuple[str | None, QueueConfig | None]],
) -> list[str]:
    now = datetime.now(UTC)
    visible_after = options.visible_after(now)
    body = codec.encode_payload(payload)

    params: list[Any] = []
    ids: list[str] = []
    for queue_name, config in targets:
        job_id = str(uuid.uuid4())
        ids.append(job_id)
        params.extend(
            [
                job_id,
                topic,
                queue_name,
                body,
                options.priority,
                options.max_attempts(config),
                options.retry_limit,
                visible_after,
                now,
            ]
        )

    await port.execute(plans_for(port.dialect).insert_jobs(len(targets)), params)
    return ids
