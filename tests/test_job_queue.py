"""Job queue: dispatch, retries, retention, concurrency and delivery edge cases."""
import asyncio

import pytest
from pydantic import BaseModel
from sqlalchemy import update

from storefront.job_queue import (
    Backoff,
    Job,
    JobDefinition,
    JobOptions,
    JobQueue,
    JobState,
    PermanentJobError,
    QueueUnavailable,
    RateLimit,
)
from tests.conftest import eventually, wait_for_state


class EchoPayload(BaseModel):
    value: int


FAST = JobOptions(attempts=3, backoff=Backoff(type="exponential", delay_ms=10))


def make_queue(database, transport, handler, on_failed=None, **kwargs) -> JobQueue:
    definitions = [JobDefinition("echo", EchoPayload, handler, on_failed)]
    kwargs.setdefault("default_options", FAST)
    return JobQueue("test-queue", database.session_factory, transport, definitions, **kwargs)


@pytest.fixture
async def started():
    queues = []

    async def _start(queue: JobQueue) -> JobQueue:
        await queue.start()
        queues.append(queue)
        return queue

    yield _start
    for queue in queues:
        await queue.stop()


async def test_submit_returns_immediately_and_job_completes(database, transport, started):
    async def handler(ctx, payload):
        await ctx.update_progress(50)
        return {"doubled": payload.value * 2}

    queue = await started(make_queue(database, transport, handler))
    job_id = await queue.submit("echo", EchoPayload(value=21))

    status = await wait_for_state(queue, job_id, [JobState.COMPLETED])
    assert status.result == {"doubled": 42}
    assert status.progress == 100
    assert status.attempts_made == 1
    assert status.failure_reason is None


async def test_get_status_of_unknown_job_is_none(database, transport):
    queue = make_queue(database, transport, None)
    assert await queue.get_status("does-not-exist") is None


async def test_higher_priority_dequeued_first(database, transport, started):
    order = []

    async def handler(ctx, payload):
        order.append(payload.value)

    queue = make_queue(database, transport, handler, concurrency=1)
    for value, priority in [(1, 1), (3, 3), (2, 2)]:
        await queue.submit("echo", {"value": value}, JobOptions(priority=priority))

    await started(queue)
    for _ in range(100):
        if len(order) == 3:
            break
        await asyncio.sleep(0.02)

    assert order == [3, 2, 1]


async def test_failed_attempts_are_retried_with_exponential_backoff(database, transport, started):
    calls = []

    async def handler(ctx, payload):
        calls.append(ctx.attempts_made)
        if len(calls) < 3:
            raise RuntimeError("gateway timeout")
        return {"ok": True}

    queue = await started(make_queue(database, transport, handler))
    job_id = await queue.submit("echo", {"value": 1})

    status = await wait_for_state(queue, job_id, [JobState.COMPLETED])
    assert calls == [1, 2, 3]
    assert status.attempts_made == 3
    assert [p["delay_ms"] for p in transport.published] == [0, 10, 20]


async def test_exhausted_job_fails_once_and_runs_failure_hook(database, transport, started):
    failures = []

    async def handler(ctx, payload):
        raise RuntimeError("gateway outage")

    async def on_failed(ctx, payload, error):
        failures.append((ctx.job_id, payload.value, str(error)))

    queue = await started(make_queue(database, transport, handler, on_failed))
    job_id = await queue.submit("echo", {"value": 7})

    status = await wait_for_state(queue, job_id, [JobState.FAILED])
    assert status.attempts_made == 3
    assert status.failure_reason == "gateway outage"
    await eventually(lambda: failures)
    assert failures == [(job_id, 7, "gateway outage")]


async def test_permanent_error_skips_remaining_attempts(database, transport, started):
    calls = []
    failures = []

    async def handler(ctx, payload):
        calls.append(ctx.attempts_made)
        raise PermanentJobError("user not found")

    async def on_failed(ctx, payload, error):
        failures.append(error)

    queue = await started(make_queue(database, transport, handler, on_failed))
    job_id = await queue.submit("echo", {"value": 1})

    status = await wait_for_state(queue, job_id, [JobState.FAILED])
    assert calls == [1]
    assert status.attempts_made == 1
    assert status.failure_reason == "user not found"
    await eventually(lambda: failures)
    assert len(failures) == 1


async def test_unknown_job_type_fails_without_retry(database, transport, started):
    queue = await started(make_queue(database, transport, None))
    job_id = await queue.submit("send-carrier-pigeon", {"value": 1})

    status = await wait_for_state(queue, job_id, [JobState.FAILED])
    assert status.attempts_made == 1
    assert "Unknown job type: send-carrier-pigeon" in status.failure_reason
    assert len(transport.published) == 1


async def test_broker_failure_raises_queue_unavailable_and_leaves_no_job(database, transport):
    queue = make_queue(database, transport, None)
    transport.fail_publish = True

    with pytest.raises(QueueUnavailable):
        await queue.submit("echo", {"value": 1})

    counts = await queue.counts()
    assert counts["total"] == 0


async def test_finished_jobs_are_bounded_oldest_evicted(database, transport, started):
    async def handler(ctx, payload):
        return {"value": payload.value}

    queue = await started(make_queue(database, transport, handler, concurrency=1, keep_completed=2))
    job_ids = []
    for value in range(4):
        job_id = await queue.submit("echo", {"value": value})
        await wait_for_state(queue, job_id, [JobState.COMPLETED])
        job_ids.append(job_id)

    async def retained():
        return (await queue.counts())["completed"] == 2

    await eventually(retained)
    assert await queue.get_status(job_ids[0]) is None
    assert await queue.get_status(job_ids[1]) is None
    assert (await queue.get_status(job_ids[3])).state == JobState.COMPLETED


async def test_worker_pool_is_bounded(database, transport, started):
    running = 0
    peak = 0

    async def handler(ctx, payload):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1

    queue = await started(make_queue(database, transport, handler, concurrency=2))
    job_ids = [await queue.submit("echo", {"value": i}) for i in range(6)]
    for job_id in job_ids:
        await wait_for_state(queue, job_id, [JobState.COMPLETED])

    assert peak == 2


async def test_rate_limit_spaces_out_attempt_starts(database, transport, started):
    loop = asyncio.get_running_loop()
    starts = []

    async def handler(ctx, payload):
        starts.append(loop.time())

    queue = await started(
        make_queue(database, transport, handler, concurrency=4, rate_limit=RateLimit(max_jobs=2, per_seconds=0.3))
    )
    job_ids = [await queue.submit("echo", {"value": i}) for i in range(3)]
    for job_id in job_ids:
        await wait_for_state(queue, job_id, [JobState.COMPLETED])

    starts.sort()
    assert starts[2] - starts[0] >= 0.25


async def test_duplicate_delivery_of_finished_job_is_ignored(database, transport, started):
    calls = []

    async def handler(ctx, payload):
        calls.append(payload.value)

    queue = await started(make_queue(database, transport, handler))
    job_id = await queue.submit("echo", {"value": 1})
    await wait_for_state(queue, job_id, [JobState.COMPLETED])

    transport.redeliver("test-queue", job_id)
    await asyncio.sleep(0.1)

    assert calls == [1]
    assert (await queue.get_status(job_id)).attempts_made == 1


async def test_delivery_before_backoff_elapsed_is_ignored(database, transport, started):
    calls = []

    async def handler(ctx, payload):
        calls.append(payload.value)

    queue = await started(make_queue(database, transport, handler))
    job_id = await queue.submit("echo", {"value": 1}, JobOptions(delay_ms=60_000))

    transport.redeliver("test-queue", job_id)
    await asyncio.sleep(0.1)

    status = await queue.get_status(job_id)
    assert calls == []
    assert status.state == JobState.WAITING
    assert status.attempts_made == 0


async def _mark_active(database, job_id: str, attempts_made: int):
    async with database.session_factory() as session:
        await session.execute(
            update(Job).where(Job.id == job_id).values(state=JobState.ACTIVE.value, attempts_made=attempts_made)
        )
        await session.commit()


async def test_stalled_job_is_restarted_as_a_new_attempt(database, transport, started):
    calls = []

    async def handler(ctx, payload):
        calls.append(ctx.attempts_made)

    queue = make_queue(database, transport, handler)
    job_id = await queue.submit("echo", {"value": 1})
    # Worker picked it up and died before acknowledging
    await _mark_active(database, job_id, attempts_made=1)
    transport.redeliver("test-queue", job_id)

    await started(queue)
    status = await wait_for_state(queue, job_id, [JobState.COMPLETED])
    assert calls == [2]
    assert status.attempts_made == 2


async def test_stalled_job_out_of_attempts_fails(database, transport, started):
    failures = []

    async def handler(ctx, payload):
        raise AssertionError("must not run")

    async def on_failed(ctx, payload, error):
        failures.append(str(error))

    queue = make_queue(database, transport, handler, on_failed, default_options=JobOptions(attempts=1))
    job_id = await queue.submit("echo", {"value": 1})
    await _mark_active(database, job_id, attempts_made=1)
    transport.redeliver("test-queue", job_id)

    await started(queue)
    status = await wait_for_state(queue, job_id, [JobState.FAILED])
    assert status.failure_reason == "job stalled more than allowable limit"
    await eventually(lambda: failures)
    assert failures == ["job stalled more than allowable limit"]


async def test_progress_is_visible_while_running(database, transport, started):
    release = asyncio.Event()

    async def handler(ctx, payload):
        await ctx.update_progress(40)
        await release.wait()

    queue = await started(make_queue(database, transport, handler))
    job_id = await queue.submit("echo", {"value": 1})

    for _ in range(100):
        status = await queue.get_status(job_id)
        if status.progress == 40:
            break
        await asyncio.sleep(0.02)

    assert status.state == JobState.ACTIVE
    assert status.progress == 40
    release.set()
    await wait_for_state(queue, job_id, [JobState.COMPLETED])


async def test_clean_removes_old_finished_jobs(database, transport, started):
    async def handler(ctx, payload):
        return None

    queue = await started(make_queue(database, transport, handler))
    job_id = await queue.submit("echo", {"value": 1})
    await wait_for_state(queue, job_id, [JobState.COMPLETED])
    await asyncio.sleep(0.01)

    assert await queue.clean(JobState.COMPLETED, grace_seconds=0) == 1
    assert await queue.get_status(job_id) is None

    with pytest.raises(ValueError):
        await queue.clean(JobState.WAITING, grace_seconds=0)
