"""Redis-backed delayed job store.

Jobs are addressed by caller-supplied ids so that producers can upsert and
cancel them without keeping their own index. Each queue uses three keys:

- ``{queue}:job:{job_id}`` hash with the job record
- ``{queue}:delayed`` sorted set of job ids scored by due time (epoch ms)
- ``{queue}:active`` sorted set of claimed job ids scored by claim time

Multi-key mutations run as Lua scripts so concurrent producers and workers
never observe a half-applied job.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class JobState(str, Enum):
    """Delayed job state enumeration."""

    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A deferred job as held by a store."""

    job_id: str
    name: str
    payload: dict[str, Any]
    run_at: datetime
    state: JobState = JobState.DELAYED
    attempts_made: int = 0
    remove_on_complete: bool = True
    remove_on_fail: bool = True
    failed_reason: str | None = None
    store: "DelayedJobStore | None" = field(default=None, repr=False, compare=False)

    async def remove(self) -> None:
        """Remove this job from the store it was read from."""
        if self.store is None:
            raise RuntimeError(f"Job {self.job_id} is not bound to a store")
        await self.store.remove(self.job_id)


class DelayedJobStore(Protocol):
    """Deferred execution facility with lookup and removal by job id."""

    async def add(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        job_id: str,
        delay: timedelta,
        remove_on_complete: bool = True,
        remove_on_fail: bool = True,
    ) -> Job:
        """Enqueue a job to become due after ``delay``.

        Adding an id that already exists leaves the stored job untouched.
        """

    async def get_job(self, job_id: str) -> Job | None:
        """Return the job with this id, or None."""

    async def remove(self, job_id: str) -> None:
        """Remove a job. Removing an unknown id is a no-op."""

    async def claim_due(self, limit: int, now: datetime | None = None) -> list[Job]:
        """Claim up to ``limit`` due jobs for processing."""

    async def complete(self, job: Job) -> None:
        """Mark a claimed job as completed."""

    async def fail(self, job: Job, error: str) -> None:
        """Mark a claimed job as failed."""

    async def recover_stalled(
        self,
        stalled_after: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Make jobs claimed longer than ``stalled_after`` ago due again."""


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | str) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


_ADD_SCRIPT = """
if redis.call("EXISTS", KEYS[1]) == 1 then
    return 0
end
redis.call(
    "HSET", KEYS[1],
    "name", ARGV[2],
    "payload", ARGV[3],
    "run_at", ARGV[4],
    "state", "delayed",
    "attempts_made", "0",
    "remove_on_complete", ARGV[5],
    "remove_on_fail", ARGV[6]
)
redis.call("ZADD", KEYS[2], ARGV[4], ARGV[1])
return 1
"""

_CLAIM_SCRIPT = """
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[2]))
local claimed = {}
for _, id in ipairs(ids) do
    redis.call("ZREM", KEYS[1], id)
    local key = ARGV[3] .. id
    if redis.call("EXISTS", key) == 1 then
        redis.call("ZADD", KEYS[2], ARGV[1], id)
        redis.call("HSET", key, "state", "active")
        redis.call("HINCRBY", key, "attempts_made", 1)
        table.insert(claimed, id)
    end
end
return claimed
"""

# A job replaced while it was being processed is back in "delayed" state and
# must not be finalized by the worker that held the old one.
_FINISH_SCRIPT = """
redis.call("ZREM", KEYS[2], ARGV[1])
if redis.call("HGET", KEYS[1], "state") ~= "active" then
    return 0
end
if redis.call("HGET", KEYS[1], ARGV[3]) == "1" then
    redis.call("DEL", KEYS[1])
    return 1
end
redis.call("HSET", KEYS[1], "state", ARGV[2])
if ARGV[4] ~= "" then
    redis.call("HSET", KEYS[1], "failed_reason", ARGV[4])
end
return 1
"""

_RECOVER_SCRIPT = """
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
local recovered = 0
for _, id in ipairs(ids) do
    redis.call("ZREM", KEYS[1], id)
    local key = ARGV[3] .. id
    if redis.call("HGET", key, "state") == "active" then
        redis.call("HSET", key, "state", "delayed")
        redis.call("ZADD", KEYS[2], ARGV[2], id)
        recovered = recovered + 1
    end
end
return recovered
"""


class RedisDelayedJobStore:
    """Delayed job store on top of Redis sorted sets and hashes."""

    def __init__(self, redis_client: Redis, queue_name: str):
        """Initialize store with Redis client and queue name."""
        self.redis = redis_client
        self.queue_name = queue_name
        self.delayed_key = f"{queue_name}:delayed"
        self.active_key = f"{queue_name}:active"
        self.job_key_prefix = f"{queue_name}:job:"

        self._add = redis_client.register_script(_ADD_SCRIPT)
        self._claim = redis_client.register_script(_CLAIM_SCRIPT)
        self._finish = redis_client.register_script(_FINISH_SCRIPT)
        self._recover = redis_client.register_script(_RECOVER_SCRIPT)

    def job_key(self, job_id: str) -> str:
        """Get the hash key holding a job."""
        return f"{self.job_key_prefix}{job_id}"

    async def add(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        job_id: str,
        delay: timedelta,
        remove_on_complete: bool = True,
        remove_on_fail: bool = True,
    ) -> Job:
        """
        Enqueue a job to become due after ``delay``.

        Args:
            name: Job name, informational
            payload: JSON-serializable job data
            job_id: Caller-supplied job identifier
            delay: Time until the job becomes due
            remove_on_complete: Delete the job once it completes
            remove_on_fail: Delete the job once it fails

        Returns:
            The enqueued job, or the existing one if the id was taken
        """
        run_at = datetime.now(UTC) + delay
        job = Job(
            job_id=job_id,
            name=name,
            payload=payload,
            run_at=run_at,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            store=self,
        )

        created = await self._add(
            keys=[self.job_key(job_id), self.delayed_key],
            args=[
                job_id,
                name,
                json.dumps(payload, default=str),
                to_epoch_ms(run_at),
                int(remove_on_complete),
                int(remove_on_fail),
            ],
        )

        if not created:
            logger.debug("delayed_job_already_exists", queue=self.queue_name, job_id=job_id)
            existing = await self.get_job(job_id)
            if existing is not None:
                return existing

        return job

    async def get_job(self, job_id: str) -> Job | None:
        """Return the job with this id, or None."""
        data = await self.redis.hgetall(self.job_key(job_id))
        if not data:
            return None

        return Job(
            job_id=job_id,
            name=data.get("name", ""),
            payload=json.loads(data.get("payload") or "{}"),
            run_at=from_epoch_ms(data["run_at"]),
            state=JobState(data.get("state", JobState.DELAYED.value)),
            attempts_made=int(data.get("attempts_made", 0)),
            remove_on_complete=data.get("remove_on_complete") == "1",
            remove_on_fail=data.get("remove_on_fail") == "1",
            failed_reason=data.get("failed_reason"),
            store=self,
        )

    async def remove(self, job_id: str) -> None:
        """Remove a job and its queue memberships."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self.job_key(job_id))
            pipe.zrem(self.delayed_key, job_id)
            pipe.zrem(self.active_key, job_id)
            await pipe.execute()

    async def claim_due(self, limit: int, now: datetime | None = None) -> list[Job]:
        """
        Claim due jobs for processing.

        Args:
            limit: Maximum number of jobs to claim
            now: Reference time, defaults to current UTC time

        Returns:
            Claimed jobs in due order
        """
        now = now or datetime.now(UTC)
        job_ids = await self._claim(
            keys=[self.delayed_key, self.active_key],
            args=[to_epoch_ms(now), limit, self.job_key_prefix],
        )

        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            # Removed between claim and read
            if job is not None:
                jobs.append(job)
        return jobs

    async def complete(self, job: Job) -> None:
        """Mark a claimed job as completed."""
        await self._finish(
            keys=[self.job_key(job.job_id), self.active_key],
            args=[job.job_id, JobState.COMPLETED.value, "remove_on_complete", ""],
        )

    async def fail(self, job: Job, error: str) -> None:
        """Mark a claimed job as failed."""
        await self._finish(
            keys=[self.job_key(job.job_id), self.active_key],
            args=[job.job_id, JobState.FAILED.value, "remove_on_fail", error],
        )

    async def recover_stalled(
        self,
        stalled_after: timedelta,
        now: datetime | None = None,
    ) -> int:
        """
        Return jobs claimed by a worker that never finished them to the queue.

        Args:
            stalled_after: How long a claim may stay unfinished
            now: Reference time, defaults to current UTC time

        Returns:
            Number of recovered jobs
        """
        now = now or datetime.now(UTC)
        recovered = await self._recover(
            keys=[self.active_key, self.delayed_key],
            args=[to_epoch_ms(now - stalled_after), to_epoch_ms(now), self.job_key_prefix],
        )

        if recovered:
            logger.warning("stalled_jobs_recovered", queue=self.queue_name, count=recovered)

        return int(recovered)
