import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from txqueue.adapters.sql.sqlite import SQLiteDatabase
from txqueue.core import jobs, publisher, registry, subscriptions
from txqueue.core.publisher import publish, send
from txqueue.core.schema import ensure_schema
from txqueue.core.sweeper import Sweeper, SweepResult
from txqueue.domain.models import JobState, Queue, QueueConfig

LEASE = timedelta(seconds=60)


@pytest.fixture
async def db(tmp_path):
    database = SQLiteDatabase(tmp_path / "queue.db")
    await ensure_schema(database)
    yield database
    await database.close()


@pytest.fixture
async def queue(db: SQLiteDatabase) -> Queue:
    return await registry.create_queue(
        db, "emails", QueueConfig(retry_limit=1, lease_duration=LEASE)
    )


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------


async def test_sweep_without_expired_leases(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    await jobs.lease(db, queue)

    result = await Sweeper(port=db).sweep()

    assert result == SweepResult()
    assert result.reclaimed == 0


async def test_expired_lease_is_retried_then_dead(db: SQLiteDatabase, queue: Queue) -> None:
    job_id = await send(db, "emails", {})
    sweeper = Sweeper(port=db)
    now = datetime.now(UTC)

    # attempt 1: the worker dies, the sweeper schedules a retry
    [job] = await jobs.lease(db, queue, now=now)
    now += LEASE + timedelta(seconds=1)
    assert await sweeper.sweep(now=now) == SweepResult(retried=1)

    stored = await jobs.get_job(db, job_id)
    assert stored.state == JobState.CREATED
    assert stored.last_error.startswith("LeaseExpired")

    # attempt 2: the worker dies again, retries are exhausted
    [job] = await jobs.lease(db, queue, now=now)
    assert job.attempt == 2
    now += LEASE + timedelta(seconds=1)
    assert await sweeper.sweep(now=now) == SweepResult(dead=1)

    assert (await jobs.get_job(db, job_id)).state == JobState.DEAD
    assert await jobs.lease(db, queue, now=now + timedelta(days=1)) == []


async def test_sweep_ignores_unexpired_leases(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    now = datetime.now(UTC)
    [job] = await jobs.lease(db, queue, now=now)

    assert (await Sweeper(port=db).sweep(now=now + LEASE / 2)).reclaimed == 0
    assert (await jobs.get_job(db, job.id)).state == JobState.ACTIVE


async def test_extended_lease_is_not_reclaimed(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    now = datetime.now(UTC)
    [job] = await jobs.lease(db, queue, now=now)
    await jobs.extend_lease(db, job, LEASE, now=now + LEASE / 2)

    result = await Sweeper(port=db).sweep(now=now + LEASE + timedelta(seconds=1))

    assert result.reclaimed == 0


async def test_stale_worker_cannot_complete_reclaimed_job(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    now = datetime.now(UTC)
    [stale] = await jobs.lease(db, queue, now=now)
    now += LEASE + timedelta(seconds=1)
    await Sweeper(port=db).sweep(now=now)
    [fresh] = await jobs.lease(db, queue, now=now)

    assert await jobs.complete(db, stale) is False
    assert await jobs.complete(db, fresh) is True


async def test_sweep_uses_dead_letter_queue(db: SQLiteDatabase) -> None:
    await registry.create_queue(db, "graveyard")
    queue = await registry.create_queue(
        db, "fragile", QueueConfig(retry_limit=0, lease_duration=LEASE, dead_letter="graveyard")
    )
    await send(db, "fragile", {"n": 1})
    now = datetime.now(UTC)
    await jobs.lease(db, queue, now=now)

    result = await Sweeper(port=db).sweep(now=now + LEASE * 2)

    assert result == SweepResult(dead=1)
    assert await registry.queue_size(db, "graveyard") == 1


async def test_sweep_handles_more_than_one_batch(db: SQLiteDatabase, queue: Queue) -> None:
    for n in range(7):
        await send(db, "emails", {"n": n})
    now = datetime.now(UTC)
    await jobs.lease(db, queue, batch_size=7, now=now)

    result = await Sweeper(port=db, batch_size=3).sweep(now=now + LEASE * 2)

    assert result.retried == 7
    assert await registry.queue_size(db, "emails") == 7


async def test_concurrent_sweepers_reclaim_each_job_once(db: SQLiteDatabase, queue: Queue) -> None:
    for n in range(10):
        await send(db, "emails", {"n": n})
    now = datetime.now(UTC)
    await jobs.lease(db, queue, batch_size=10, now=now)
    later = now + LEASE * 2

    results = await asyncio.gather(*(Sweeper(port=db).sweep(now=later) for _ in range(4)))

    assert sum(r.retried for r in results) == 10
    assert sum(r.dead for r in results) == 0
    assert await registry.queue_size(db, "emails") == 10


# ---------------------------------------------------------------------------
# Routing unrouted jobs
# ---------------------------------------------------------------------------


async def test_sweep_routes_job_published_while_subscribing(
    db: SQLiteDatabase, queue: Queue, monkeypatch: pytest.MonkeyPatch
) -> None:
    read_subscriptions = publisher.subscribed_queues

    async def subscribe_between_read_and_insert(port, topic):
        queues = await read_subscriptions(port, topic)
        # the claim runs before the publisher inserts its row
        await subscriptions.subscribe(port, topic, "emails")
        return queues

    monkeypatch.setattr(publisher, "subscribed_queues", subscribe_between_read_and_insert)
    [job_id] = await publish(db, "signup", {"n": 1})
    monkeypatch.undo()

    assert (await jobs.get_job(db, job_id)).queue_name is None
    assert await jobs.lease(db, queue) == []

    result = await Sweeper(port=db).sweep()

    assert result == SweepResult(routed=1)
    [job] = await jobs.lease(db, queue)
    assert job.id == job_id
    assert job.max_attempts == queue.config.max_attempts


async def test_sweep_leaves_unsubscribed_topics_unrouted(db: SQLiteDatabase, queue: Queue) -> None:
    [job_id] = await publish(db, "nobody-listens", {})

    assert (await Sweeper(port=db).sweep()).routed == 0
    assert (await jobs.get_job(db, job_id)).queue_name is None


# ---------------------------------------------------------------------------
# purge
# ---------------------------------------------------------------------------


async def test_purge_deletes_old_finished_jobs(db: SQLiteDatabase, queue: Queue) -> None:
    for n in range(3):
        await send(db, "emails", {"n": n})
    done, failed, active = await jobs.lease(db, queue, batch_size=3)
    await jobs.complete(db, done)
    await jobs.fail(db, failed, "bad", queue.config, retry=False)
    waiting = await send(db, "emails", {"n": 3})

    sweeper = Sweeper(port=db)
    assert await sweeper.purge(timedelta(hours=1)) == 0
    assert await sweeper.purge(timedelta(hours=1), now=datetime.now(UTC) + timedelta(hours=2)) == 2

    assert (await jobs.get_job(db, active.id)).state == JobState.ACTIVE
    assert (await jobs.get_job(db, waiting)).state == JobState.CREATED


# ---------------------------------------------------------------------------
# Background loop
# ---------------------------------------------------------------------------


async def test_background_sweeper_reclaims(db: SQLiteDatabase) -> None:
    queue = await registry.create_queue(
        db, "short", QueueConfig(lease_duration=timedelta(milliseconds=20))
    )
    job_id = await send(db, "short", {})
    await jobs.lease(db, queue)

    async with Sweeper(port=db, interval=timedelta(milliseconds=20)):
        for _ in range(100):
            if (await jobs.get_job(db, job_id)).state == JobState.CREATED:
                break
            await asyncio.sleep(0.02)

    assert (await jobs.get_job(db, job_id)).state == JobState.CREATED


async def test_start_twice_raises(db: SQLiteDatabase) -> None:
    sweeper = Sweeper(port=db, interval=timedelta(seconds=10))
    await sweeper.start()
    try:
        with pytest.raises(RuntimeError):
            await sweeper.start()
    finally:
        await sweeper.stop()
