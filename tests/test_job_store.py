"""Tests for the Redis delayed job store."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio

from app.core.job_store import (
    JobState,
    RedisDelayedJobStore,
    from_epoch_ms,
    to_epoch_ms,
)

QUEUE = "appointment-notifications"
RUN_AT = datetime(2026, 3, 2, 11, 0, tzinfo=UTC)


@pytest.fixture
def redis_client():
    """Mock Redis client whose registered scripts are async mocks."""
    client = MagicMock()
    client.hgetall = AsyncMock(return_value={})
    client.register_script.side_effect = lambda script: AsyncMock(name="script")

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1, 0])
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.pipe = pipe
    return client


@pytest.fixture
def store(redis_client) -> RedisDelayedJobStore:
    return RedisDelayedJobStore(redis_client, QUEUE)


def stored_job(**overrides) -> dict[str, str]:
    data = {
        "name": "send-appointment-reminder",
        "payload": json.dumps({"appointment_id": "a1", "window_label": "1h"}),
        "run_at": str(to_epoch_ms(RUN_AT)),
        "state": "delayed",
        "attempts_made": "0",
        "remove_on_complete": "1",
        "remove_on_fail": "1",
    }
    data.update(overrides)
    return data


def test_epoch_ms_conversion():
    assert to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC)) == 1000
    assert from_epoch_ms("1000") == datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC)
    assert from_epoch_ms(to_epoch_ms(RUN_AT)) == RUN_AT


def test_keys_are_namespaced_by_queue(store, redis_client):
    """Test every key lives under the queue name."""
    assert store.delayed_key == f"{QUEUE}:delayed"
    assert store.active_key == f"{QUEUE}:active"
    assert store.job_key("a1_1h") == f"{QUEUE}:job:a1_1h"
    assert redis_client.register_script.call_count == 4


@pytest.mark.asyncio
async def test_get_job_missing(store, redis_client):
    assert await store.get_job("a1_1h") is None
    redis_client.hgetall.assert_awaited_once_with(f"{QUEUE}:job:a1_1h")


@pytest.mark.asyncio
async def test_get_job_parses_hash(store, redis_client):
    """Test a stored hash is read back into a bound job."""
    redis_client.hgetall.return_value = stored_job(
        state="failed", attempts_made="2", remove_on_fail="0", failed_reason="smtp down"
    )

    job = await store.get_job("a1_1h")

    assert job.job_id == "a1_1h"
    assert job.payload == {"appointment_id": "a1", "window_label": "1h"}
    assert job.run_at == RUN_AT
    assert job.state == JobState.FAILED
    assert job.attempts_made == 2
    assert job.remove_on_complete is True
    assert job.remove_on_fail is False
    assert job.failed_reason == "smtp down"
    assert job.store is store


@pytest.mark.asyncio
async def test_add_runs_script_with_due_time(store):
    """Test add passes the job record and due time to the add script."""
    store._add.return_value = 1
    before = datetime.now(UTC)

    job = await store.add(
        "send-appointment-reminder",
        {"appointment_id": "a1"},
        job_id="a1_1h",
        delay=timedelta(hours=1),
        remove_on_fail=False,
    )

    kwargs = store._add.await_args.kwargs
    assert kwargs["keys"] == [f"{QUEUE}:job:a1_1h", f"{QUEUE}:delayed"]
    job_id, name, payload, run_at_ms, on_complete, on_fail = kwargs["args"]
    assert (job_id, name) == ("a1_1h", "send-appointment-reminder")
    assert json.loads(payload) == {"appointment_id": "a1"}
    assert run_at_ms >= to_epoch_ms(before + timedelta(hours=1))
    assert (on_complete, on_fail) == (1, 0)
    assert job.state == JobState.DELAYED
    assert job.store is store


@pytest.mark.asyncio
async def test_add_existing_id_returns_stored_job(store, redis_client):
    """Test adding a taken id leaves the stored job in place."""
    store._add.return_value = 0
    redis_client.hgetall.return_value = stored_job(state="active", attempts_made="1")

    job = await store.add(
        "send-appointment-reminder",
        {"appointment_id": "a1"},
        job_id="a1_1h",
        delay=timedelta(hours=5),
    )

    assert job.state == JobState.ACTIVE
    assert job.run_at == RUN_AT


@pytest.mark.asyncio
async def test_remove_deletes_hash_and_memberships(store, redis_client):
    """Test remove clears the job from every key in one transaction."""
    await store.remove("a1_1h")

    redis_client.pipeline.assert_called_once_with(transaction=True)
    redis_client.pipe.delete.assert_called_once_with(f"{QUEUE}:job:a1_1h")
    redis_client.pipe.zrem.assert_any_call(f"{QUEUE}:delayed", "a1_1h")
    redis_client.pipe.zrem.assert_any_call(f"{QUEUE}:active", "a1_1h")
    redis_client.pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_job_remove_goes_through_its_store(store, redis_client):
    redis_client.hgetall.return_value = stored_job()
    job = await store.get_job("a1_1h")

    await job.remove()

    redis_client.pipe.delete.assert_called_once_with(f"{QUEUE}:job:a1_1h")


@pytest.mark.asyncio
async def test_claim_due_skips_jobs_removed_meanwhile(store, redis_client):
    """Test a claimed id whose hash is gone is not returned."""
    store._claim.return_value = ["a1_1h", "a2_1h"]
    redis_client.hgetall.side_effect = [stored_job(state="active", attempts_made="1"), {}]

    jobs = await store.claim_due(10, now=RUN_AT)

    assert [job.job_id for job in jobs] == ["a1_1h"]
    kwargs = store._claim.await_args.kwargs
    assert kwargs["keys"] == [f"{QUEUE}:delayed", f"{QUEUE}:active"]
    assert kwargs["args"] == [to_epoch_ms(RUN_AT), 10, f"{QUEUE}:job:"]


@pytest.mark.asyncio
async def test_complete_and_fail_use_finish_script(store, redis_client):
    redis_client.hgetall.return_value = stored_job(state="active")
    job = await store.get_job("a1_1h")

    await store.complete(job)
    assert store._finish.await_args.kwargs["args"] == [
        "a1_1h",
        "completed",
        "remove_on_complete",
        "",
    ]

    await store.fail(job, "smtp down")
    assert store._finish.await_args.kwargs["args"] == [
        "a1_1h",
        "failed",
        "remove_on_fail",
        "smtp down",
    ]


@pytest.mark.asyncio
async def test_recover_stalled_logs_recovered_jobs(store, log_output):
    """Test recovered claims are reported."""
    store._recover.return_value = 2

    recovered = await store.recover_stalled(timedelta(minutes=5), now=RUN_AT)

    assert recovered == 2
    assert store._recover.await_args.kwargs["args"] == [
        to_epoch_ms(RUN_AT - timedelta(minutes=5)),
        to_epoch_ms(RUN_AT),
        f"{QUEUE}:job:",
    ]
    assert log_output.entries == [
        {"event": "stalled_jobs_recovered", "log_level": "warning", "queue": QUEUE, "count": 2}
    ]


@pytest.mark.asyncio
async def test_recover_stalled_quiet_when_nothing_stalled(store, log_output):
    store._recover.return_value = 0

    assert await store.recover_stalled(timedelta(minutes=5)) == 0
    assert log_output.entries == []


@pytest_asyncio.fixture
async def lua_store():
    """Store on an in-process Redis that runs the Lua scripts."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield RedisDelayedJobStore(client, QUEUE)
    await client.aclose()


async def add_reminder(store, job_id="a1_1h", delay=timedelta(hours=1), **kwargs):
    return await store.add(
        "send-appointment-reminder",
        {"appointment_id": job_id.split("_")[0]},
        job_id=job_id,
        delay=delay,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_script_add_keeps_existing_job(lua_store):
    """Test adding a taken id changes neither the record nor the due time."""
    first = await add_reminder(lua_store, delay=timedelta(hours=1))
    second = await lua_store.add(
        "send-appointment-reminder",
        {"appointment_id": "other"},
        job_id="a1_1h",
        delay=timedelta(hours=5),
    )

    stored = await lua_store.get_job("a1_1h")
    assert stored.payload == {"appointment_id": "a1"}
    assert stored.state == JobState.DELAYED
    assert stored.attempts_made == 0
    assert to_epoch_ms(stored.run_at) == to_epoch_ms(first.run_at)
    assert second.payload == {"appointment_id": "a1"}
    assert await lua_store.redis.zscore(lua_store.delayed_key, "a1_1h") == to_epoch_ms(
        first.run_at
    )


@pytest.mark.asyncio
async def test_script_claim_moves_due_job_to_active(lua_store):
    await add_reminder(lua_store, "a1_1h", timedelta(hours=1))
    await add_reminder(lua_store, "a1_24h", timedelta(hours=24))
    later = datetime.now(UTC) + timedelta(hours=2)

    jobs = await lua_store.claim_due(10, now=later)

    assert [job.job_id for job in jobs] == ["a1_1h"]
    assert jobs[0].state == JobState.ACTIVE
    assert jobs[0].attempts_made == 1
    assert await lua_store.redis.zscore(lua_store.delayed_key, "a1_1h") is None
    assert await lua_store.redis.zscore(lua_store.active_key, "a1_1h") == to_epoch_ms(later)
    assert await lua_store.redis.zscore(lua_store.delayed_key, "a1_24h") is not None
    assert await lua_store.claim_due(10, now=later) == []


@pytest.mark.asyncio
async def test_script_claim_respects_limit(lua_store):
    for index in range(3):
        await add_reminder(lua_store, f"a{index}_1h", timedelta(minutes=index + 1))

    jobs = await lua_store.claim_due(2, now=datetime.now(UTC) + timedelta(hours=1))

    assert [job.job_id for job in jobs] == ["a0_1h", "a1_1h"]


@pytest.mark.asyncio
async def test_script_complete_removes_job(lua_store):
    await add_reminder(lua_store)
    [job] = await lua_store.claim_due(10, now=datetime.now(UTC) + timedelta(hours=2))

    await lua_store.complete(job)

    assert await lua_store.get_job("a1_1h") is None
    assert await lua_store.redis.zscore(lua_store.active_key, "a1_1h") is None


@pytest.mark.asyncio
async def test_script_complete_keeps_job_when_asked(lua_store):
    await add_reminder(lua_store, remove_on_complete=False)
    [job] = await lua_store.claim_due(10, now=datetime.now(UTC) + timedelta(hours=2))

    await lua_store.complete(job)

    stored = await lua_store.get_job("a1_1h")
    assert stored.state == JobState.COMPLETED
    assert await lua_store.redis.zscore(lua_store.active_key, "a1_1h") is None


@pytest.mark.asyncio
async def test_script_complete_leaves_replacement_alone(lua_store):
    """Test finishing a claim whose job was replaced meanwhile keeps the new job due."""
    await add_reminder(lua_store, delay=timedelta(hours=1))
    [job] = await lua_store.claim_due(10, now=datetime.now(UTC) + timedelta(hours=2))

    await lua_store.remove("a1_1h")
    replacement = await add_reminder(lua_store, delay=timedelta(hours=3))
    await lua_store.complete(job)

    stored = await lua_store.get_job("a1_1h")
    assert stored is not None
    assert stored.state == JobState.DELAYED
    assert stored.attempts_made == 0
    assert await lua_store.redis.zscore(lua_store.delayed_key, "a1_1h") == to_epoch_ms(
        replacement.run_at
    )


@pytest.mark.asyncio
async def test_script_fail_removes_job_by_default(lua_store):
    await add_reminder(lua_store)
    [job] = await lua_store.claim_due(10, now=datetime.now(UTC) + timedelta(hours=2))

    await lua_store.fail(job, "smtp down")

    assert await lua_store.get_job("a1_1h") is None
    assert await lua_store.redis.exists(lua_store.job_key("a1_1h")) == 0


@pytest.mark.asyncio
async def test_script_fail_keeps_reason_when_asked(lua_store):
    await add_reminder(lua_store, remove_on_fail=False)
    [job] = await lua_store.claim_due(10, now=datetime.now(UTC) + timedelta(hours=2))

    await lua_store.fail(job, "smtp down")

    stored = await lua_store.get_job("a1_1h")
    assert stored.state == JobState.FAILED
    assert stored.failed_reason == "smtp down"


@pytest.mark.asyncio
async def test_script_recover_stalled_makes_job_due_again(lua_store):
    """Test a claim older than the stall timeout is handed out again."""
    await add_reminder(lua_store)
    claimed_at = datetime.now(UTC) + timedelta(hours=2)
    await lua_store.claim_due(10, now=claimed_at)

    assert await lua_store.recover_stalled(timedelta(minutes=5), now=claimed_at) == 0

    later = claimed_at + timedelta(minutes=10)
    assert await lua_store.recover_stalled(timedelta(minutes=5), now=later) == 1

    stored = await lua_store.get_job("a1_1h")
    assert stored.state == JobState.DELAYED
    assert await lua_store.redis.zscore(lua_store.active_key, "a1_1h") is None

    [job] = await lua_store.claim_due(10, now=later)
    assert job.attempts_made == 2


@pytest.mark.asyncio
async def test_script_recover_skips_finished_claims(lua_store):
    await add_reminder(lua_store)
    claimed_at = datetime.now(UTC) + timedelta(hours=2)
    await lua_store.claim_due(10, now=claimed_at)
    await lua_store.remove("a1_1h")

    assert await lua_store.recover_stalled(
        timedelta(minutes=5), now=claimed_at + timedelta(minutes=10)
    ) == 0
    assert await lua_store.get_job("a1_1h") is None
