import asyncio
from datetime import timedelta

import pytest

from txqueue.adapters.sql.sqlite import SQLiteDatabase
from txqueue.core import registry
from txqueue.core.publisher import send
from txqueue.core.schema import ensure_schema
from txqueue.domain.errors import ConfigConflict, QueueNotFoundError
from txqueue.domain.models import PublishOptions, QueueConfig


@pytest.fixture
async def db(tmp_path):
    database = SQLiteDatabase(tmp_path / "queue.db")
    await ensure_schema(database)
    yield database
    await database.close()


# ---------------------------------------------------------------------------
# create_queue
# ---------------------------------------------------------------------------


async def test_create_queue_with_defaults(db: SQLiteDatabase) -> None:
    queue = await registry.create_queue(db, "emails")
    assert queue.name == "emails"
    assert queue.config == QueueConfig()


async def test_create_queue_persists_config(db: SQLiteDatabase) -> None:
    config = QueueConfig(retry_limit=5, lease_duration=timedelta(seconds=30), dead_letter="graveyard")
    await registry.create_queue(db, "emails", config)

    queue = await registry.get_queue(db, "emails")

    assert queue.config == config


async def test_create_queue_is_idempotent(db: SQLiteDatabase) -> None:
    config = QueueConfig(retry_limit=5)
    first = await registry.create_queue(db, "emails", config)
    second = await registry.create_queue(db, "emails", config)
    assert first == second


async def test_create_queue_conflicting_config_raises(db: SQLiteDatabase) -> None:
    await registry.create_queue(db, "emails", QueueConfig(retry_limit=1))

    with pytest.raises(ConfigConflict) as info:
        await registry.create_queue(db, "emails", QueueConfig(retry_limit=5))

    assert info.value.existing.retry_limit == 1
    assert info.value.requested.retry_limit == 5
    # the original configuration is left untouched
    assert (await registry.get_queue(db, "emails")).config.retry_limit == 1


async def test_create_queue_poll_interval_is_not_material(db: SQLiteDatabase) -> None:
    await registry.create_queue(db, "emails", QueueConfig(poll_interval=1))
    queue = await registry.create_queue(db, "emails", QueueConfig(poll_interval=5))
    assert queue.config.poll_interval == timedelta(seconds=1)


async def test_create_queue_rejects_empty_name(db: SQLiteDatabase) -> None:
    with pytest.raises(ValueError):
        await registry.create_queue(db, "  ")


async def test_concurrent_create_queue_agrees(db: SQLiteDatabase) -> None:
    queues = await asyncio.gather(*(registry.create_queue(db, "emails") for _ in range(8)))
    assert len({q.created_at for q in queues}) == 1


async def test_create_queue_inside_rolled_back_transaction(db: SQLiteDatabase) -> None:
    tx = await db.begin()
    await registry.create_queue(tx, "emails")
    await tx.rollback()

    with pytest.raises(QueueNotFoundError):
        await registry.get_queue(db, "emails")


# ---------------------------------------------------------------------------
# get_queue / queue_size
# ---------------------------------------------------------------------------


async def test_get_missing_queue_raises(db: SQLiteDatabase) -> None:
    with pytest.raises(QueueNotFoundError) as info:
        await registry.get_queue(db, "missing")
    assert info.value.name == "missing"


async def test_queue_size_counts_waiting_jobs(db: SQLiteDatabase) -> None:
    await registry.create_queue(db, "emails")
    assert await registry.queue_size(db, "emails") == 0

    await send(db, "emails", {"n": 1})
    await send(db, "emails", {"n": 2}, PublishOptions(start_after=timedelta(hours=1)))

    assert await registry.queue_size(db, "emails") == 2


async def test_queue_size_of_unknown_queue_is_zero(db: SQLiteDatabase) -> None:
    assert await registry.queue_size(db, "missing") == 0
