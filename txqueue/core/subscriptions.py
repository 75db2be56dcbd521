"""
Subscription mapper — route topics to queues (many-to-many).

A job published under a topic is copied into every queue subscribed to that
topic at publish time. A job published while no queue is subscribed is kept
as an unrouted row (queue_name NULL); the next subscribe() for that topic
claims all of them for its queue. Delivery is deferred, never dropped.

A publish that raced a subscribe (it read no subscription, then inserted after
the subscribe's claim ran) leaves unrouted rows behind a live subscription.
The sweeper routes those through claim_unrouted() on its next pass.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from txqueue.core import codec
from txqueue.core.plans import plans_for
from txqueue.core.registry import get_queue
from txqueue.domain.models import Queue
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)


async def subscribe(port: SqlExecutionPort, topic: str, queue_name: str) -> int:
    """
    Bind `topic` to `queue_name`. Idempotent.

    Returns the number of previously unrouted jobs this subscription claimed.
    Raises QueueNotFoundError if the queue has not been created.
    """
    if not topic:
        raise ValueError("topic must not be empty")
    queue = await get_queue(port, queue_name)

    result = await port.execute(
        plans_for(port.dialect).subscribe, [topic, queue_name, datetime.now(UTC)]
    )
    if result.row_count:
        logger.info("Subscribed queue %r to topic %r", queue_name, topic)

    return await claim_unrouted(port, topic, queue)


async def claim_unrouted(port: SqlExecutionPort, topic: str, queue: Queue) -> int:
    """
    Move every unrouted, not yet leased job of `topic` into `queue`.

    Jobs published without a retry_limit override take the queue's
    max_attempts. Returns the number of jobs claimed.
    """
    claimed = await port.execute(
        plans_for(port.dialect).claim_unrouted,
        [topic, queue.name, queue.config.max_attempts],
    )
    if claimed.row_count:
        logger.info(
            "Queue %r claimed %d unrouted job(s) of topic %r",
            queue.name,
            claimed.row_count,
            topic,
        )
    return claimed.row_count


async def unsubscribe(port: SqlExecutionPort, topic: str, queue_name: str) -> bool:
    """Remove the binding. Returns False if it did not exist."""
    result = await port.execute(plans_for(port.dialect).unsubscribe, [topic, queue_name])
    return result.row_count > 0


async def subscribed_queues(port: SqlExecutionPort, topic: str) -> list[Queue]:
    """Queues currently bound to `topic`, ordered by name."""
    result = await port.execute(plans_for(port.dialect).subscribed_queues, [topic])
    return [codec.queue_from_row(row) for row in result.rows]
