import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from txqueue.adapters.sql.sqlite import SQLiteDatabase
from txqueue.core import jobs, registry
from txqueue.core.publisher import send
from txqueue.core.schema import ensure_schema
from txqueue.domain.errors import HandlerError, JobNotFoundError, LeaseLostError
from txqueue.domain.models import Job, JobState, Queue, QueueConfig


@pytest.fixture
async def db(tmp_path):
    database = SQLiteDatabase(tmp_path / "queue.db", pool_size=4)
    await ensure_schema(database)
    yield database
    await database.close()


@pytest.fixture
async def queue(db: SQLiteDatabase) -> Queue:
    return await registry.create_queue(
        db,
        "emails",
        QueueConfig(retry_limit=2, retry_delay=timedelta(seconds=10), lease_duration=timedelta(seconds=60)),
    )


async def _lease_one(db: SQLiteDatabase, queue: Queue, now: datetime | None = None) -> Job:
    [job] = await jobs.lease(db, queue, now=now)
    return job


# ---------------------------------------------------------------------------
# lease
# ---------------------------------------------------------------------------


async def test_lease_marks_job_active(db: SQLiteDatabase, queue: Queue) -> None:
    job_id = await send(db, "emails", {"n": 1})
    now = datetime.now(UTC)

    job = await _lease_one(db, queue, now)

    assert job.id == job_id
    assert job.state == JobState.ACTIVE
    assert job.attempt == 1
    assert job.lease_expiry == now + timedelta(seconds=60)
    assert (await jobs.get_job(db, job_id)).state == JobState.ACTIVE


async def test_lease_empty_queue(db: SQLiteDatabase, queue: Queue) -> None:
    assert await jobs.lease(db, queue) == []


async def test_lease_batch(db: SQLiteDatabase, queue: Queue) -> None:
    for n in range(5):
        await send(db, "emails", {"n": n})

    batch = await jobs.lease(db, queue, batch_size=3)

    assert len(batch) == 3
    assert [j.payload["n"] for j in batch] == [0, 1, 2]
    assert await registry.queue_size(db, "emails") == 2


async def test_lease_rejects_zero_batch(db: SQLiteDatabase, queue: Queue) -> None:
    with pytest.raises(ValueError):
        await jobs.lease(db, queue, batch_size=0)


async def test_leased_job_is_not_leased_again(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    await _lease_one(db, queue)
    assert await jobs.lease(db, queue) == []


async def test_concurrent_leases_never_share_a_job(db: SQLiteDatabase, queue: Queue) -> None:
    total = 20
    for n in range(total):
        await send(db, "emails", {"n": n})

    async def drain() -> list[str]:
        seen = []
        while batch := await jobs.lease(db, queue, batch_size=2):
            seen.extend(j.id for j in batch)
        return seen

    results = await asyncio.gather(*(drain() for _ in range(10)))
    leased = [job_id for ids in results for job_id in ids]

    assert len(leased) == total
    assert len(set(leased)) == total


async def test_lease_only_from_own_queue(db: SQLiteDatabase, queue: Queue) -> None:
    other = await registry.create_queue(db, "reports")
    await send(db, "reports", {})
    assert await jobs.lease(db, queue) == []
    assert len(await jobs.lease(db, other)) == 1


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


async def test_complete(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)

    assert await jobs.complete(db, job) is True

    stored = await jobs.get_job(db, job.id)
    assert stored.state == JobState.COMPLETED
    assert stored.finished_at is not None
    assert stored.lease_expiry is None


async def test_complete_with_delete(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)

    assert await jobs.complete(db, job, delete=True) is True

    with pytest.raises(JobNotFoundError):
        await jobs.get_job(db, job.id)


async def test_complete_twice_reports_lost_lease(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)
    await jobs.complete(db, job)
    assert await jobs.complete(db, job) is False


async def test_stale_attempt_cannot_complete(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    first = await _lease_one(db, queue)
    await jobs.fail(db, first, "timeout", queue.config, now=datetime.now(UTC) - timedelta(minutes=1))
    second = await _lease_one(db, queue)

    assert second.attempt == 2
    assert await jobs.complete(db, first) is False
    assert (await jobs.get_job(db, first.id)).state == JobState.ACTIVE
    assert await jobs.complete(db, second) is True


# ---------------------------------------------------------------------------
# fail
# ---------------------------------------------------------------------------


async def test_fail_schedules_retry_after_delay(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)
    now = datetime.now(UTC)

    state = await jobs.fail(db, job, ValueError("smtp down"), queue.config, now=now)

    assert state == JobState.CREATED
    stored = await jobs.get_job(db, job.id)
    assert stored.state == JobState.CREATED
    assert stored.visible_after == now + timedelta(seconds=10)
    assert stored.last_error == "ValueError: smtp down"
    assert await jobs.lease(db, queue, now=now) == []
    assert len(await jobs.lease(db, queue, now=now + timedelta(seconds=11))) == 1


async def test_fail_exhausted_attempts_is_dead(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    now = datetime.now(UTC)

    for attempt in range(1, 4):
        job = await _lease_one(db, queue, now)
        assert job.attempt == attempt
        state = await jobs.fail(db, job, "boom", queue.config, now=now)
        now += timedelta(minutes=1)

    assert state == JobState.DEAD
    stored = await jobs.get_job(db, job.id)
    assert stored.state == JobState.DEAD
    assert stored.last_error == "boom"
    assert await jobs.lease(db, queue, now=now + timedelta(days=1)) == []


async def test_fail_without_retry_is_failed(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)

    state = await jobs.fail(db, job, HandlerError("bad address", retryable=False), queue.config, retry=False)

    assert state == JobState.FAILED
    assert job.retries_left == 2
    assert (await jobs.get_job(db, job.id)).state == JobState.FAILED


async def test_fail_stale_attempt_returns_none(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)
    await jobs.complete(db, job)
    assert await jobs.fail(db, job, "late", queue.config) is None


async def test_dead_job_is_copied_to_dead_letter_queue(db: SQLiteDatabase) -> None:
    await registry.create_queue(db, "graveyard")
    queue = await registry.create_queue(
        db, "fragile", QueueConfig(retry_limit=0, dead_letter="graveyard")
    )
    await send(db, "fragile", {"email": "a@b.com"})
    job = await _lease_one(db, queue)

    assert await jobs.fail(db, job, "boom", queue.config) == JobState.DEAD

    graveyard = await registry.get_queue(db, "graveyard")
    [copy] = await jobs.lease(db, graveyard)
    assert copy.id != job.id
    assert copy.payload == {"email": "a@b.com"}


async def test_failed_job_is_not_dead_lettered(db: SQLiteDatabase) -> None:
    await registry.create_queue(db, "graveyard")
    queue = await registry.create_queue(
        db, "fragile", QueueConfig(retry_limit=3, dead_letter="graveyard")
    )
    await send(db, "fragile", {})
    job = await _lease_one(db, queue)

    await jobs.fail(db, job, "bad input", queue.config, retry=False)

    assert await registry.queue_size(db, "graveyard") == 0


async def test_missing_dead_letter_queue_is_logged(db: SQLiteDatabase, caplog) -> None:
    queue = await registry.create_queue(
        db, "fragile", QueueConfig(retry_limit=0, dead_letter="nowhere")
    )
    await send(db, "fragile", {})
    job = await _lease_one(db, queue)

    assert await jobs.fail(db, job, "boom", queue.config) == JobState.DEAD
    assert "nowhere" in caplog.text


async def test_expired_only_fail_respects_fresh_lease(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    now = datetime.now(UTC)
    job = await _lease_one(db, queue, now)

    state = await jobs.fail(db, job, "expired", queue.config, now=now, expired_only=True)

    assert state is None
    assert (await jobs.get_job(db, job.id)).state == JobState.ACTIVE


# ---------------------------------------------------------------------------
# extend_lease
# ---------------------------------------------------------------------------


async def test_extend_lease(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)
    now = datetime.now(UTC) + timedelta(seconds=30)

    extended = await jobs.extend_lease(db, job, timedelta(minutes=5), now=now)

    assert extended.lease_expiry == now + timedelta(minutes=5)
    assert (await jobs.get_job(db, job.id)).lease_expiry == extended.lease_expiry


async def test_extend_lease_of_completed_job_raises(db: SQLiteDatabase, queue: Queue) -> None:
    await send(db, "emails", {})
    job = await _lease_one(db, queue)
    await jobs.complete(db, job)

    with pytest.raises(LeaseLostError):
        await jobs.extend_lease(db, job, timedelta(minutes=5))


# ---------------------------------------------------------------------------
# get_job / describe_error
# ---------------------------------------------------------------------------


async def test_get_missing_job_raises(db: SQLiteDatabase) -> None:
    with pytest.raises(JobNotFoundError):
        await jobs.get_job(db, "missing")


def test_describe_error():
    assert jobs.describe_error(ValueError("bad")) == "ValueError: bad"
    assert jobs.describe_error(TimeoutError()) == "TimeoutError"
    assert jobs.describe_error("plain") == "plain"
