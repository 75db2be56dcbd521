"""
Queue registry — declare named queues and look up their configuration.

create_queue() is insert-or-fetch: the first caller's configuration wins and
every later declaration must agree with it on the material fields (see
QueueConfig.material()). A disagreement raises ConfigConflict instead of
silently overwriting or ignoring the request.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from txqueue.core import codec
from txqueue.core.plans import plans_for
from txqueue.domain.errors import ConfigConflict, QueueNotFoundError
from txqueue.domain.models import Queue, QueueConfig
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)


async def create_queue(
    port: SqlExecutionPort,
    name: str,
    config: QueueConfig | None = None,
) -> Queue:
    """
    Create the queue if absent and return its handle.

    Raises ConfigConflict when the queue exists with a materially different
    configuration.
    """
    if not name or not name.strip():
        raise ValueError("queue name must not be empty")
    requested = config or QueueConfig()
    plans = plans_for(port.dialect)

    result = await port.execute(
        plans.create_queue,
        [name, codec.encode_config(requested), datetime.now(UTC)],
    )
    queue = await get_queue(port, name)

    if result.row_count:
        logger.info("Created queue %r", name)
        return queue
    if queue.config.material() != requested.material():
        raise ConfigConflict(name, queue.config, requested)
    return queue


async def get_queue(port: SqlExecutionPort, name: str) -> Queue:
    """Return the handle of an existing queue. Raises QueueNotFoundError."""
    result = await port.execute(plans_for(port.dialect).get_queue, [name])
    row = result.first()
    if row is None:
        raise QueueNotFoundError(name)
    return codec.queue_from_row(row)


async def queue_size(port: SqlExecutionPort, name: str) -> int:
    """Number of jobs waiting in the queue (state 'created', delayed ones included)."""
    result = await port.execute(plans_for(port.dialect).queue_size, [name])
    row = result.first()
    return int(row["size"]) if row else 0
