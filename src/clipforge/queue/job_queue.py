"""Redis-backed priority job queue.

Key layout (prefix ``q:<name>``):

- ``job:<id>``   hash with the job record
- ``pending``    zset, score = priority * 10**12 + insertion sequence
- ``active``     zset, score = lease deadline (epoch seconds)
- ``delayed``    zset, score = time the job becomes ready again
- ``completed`` / ``failed`` / ``cancelled``   zsets, score = finish time
- ``user:<id>``  zset of a user's job ids, score = creation time
- ``paused``     flag key
- ``seq``        insertion counter

Multi-key moves run inside WATCH/MULTI transactions, so a job is always in
exactly one of the sets and concurrent workers never dequeue the same job.
"""

import functools
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from clipforge.services.exceptions import (
    InvalidJobStateError,
    JobNotFoundError,
    StoreUnavailableError,
)

logger = structlog.get_logger()

PRIORITY_SCALE = 10**12
MAX_TRANSACTION_ATTEMPTS = 10
STALLED_ERROR = "Job stalled more than allowable limit"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    id: str
    user_id: str
    data: dict[str, Any]
    priority: int
    status: JobStatus = JobStatus.QUEUED
    plan: str = "free"
    trace_id: str = ""
    retry_count: int = 0
    stalled_count: int = 0
    created_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    worker_id: Optional[str] = None

    @classmethod
    def from_hash(cls, job_id: str, raw: dict[str, str]) -> "Job":
        def _float(name: str) -> Optional[float]:
            value = raw.get(name)
            return float(value) if value not in (None, "") else None

        return cls(
            id=job_id,
            user_id=raw.get("user_id", ""),
            data=json.loads(raw.get("data") or "{}"),
            priority=int(raw.get("priority", 10)),
            status=JobStatus(raw.get("status", JobStatus.QUEUED.value)),
            plan=raw.get("plan", "free"),
            trace_id=raw.get("trace_id", ""),
            retry_count=int(raw.get("retry_count", 0)),
            stalled_count=int(raw.get("stalled_count", 0)),
            created_at=_float("created_at") or 0.0,
            started_at=_float("started_at"),
            finished_at=_float("finished_at"),
            error=raw.get("error") or None,
            worker_id=raw.get("worker_id") or None,
        )


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    priority: int
    position: Optional[int]


@dataclass(frozen=True)
class QueueStats:
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    cancelled: int
    paused: bool


@dataclass
class StallRecovery:
    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _store_errors(fn):
    """Translate Redis connectivity failures into StoreUnavailableError."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("queue.store_unavailable", operation=fn.__name__, error=str(e))
            raise StoreUnavailableError(f"Queue store unavailable: {e}") from e

    return wrapper


class JobQueue:
    def __init__(
        self,
        redis: Redis,
        name: str = "video-generation",
        publisher=None,
        keep_completed: int = 100,
        keep_failed: int = 50,
        keep_cancelled: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize queue.

        Args:
            redis: asyncio Redis client (decode_responses=True)
            name: Queue name, used as key prefix
            publisher: ProgressPublisher used to announce cancellations
            keep_completed: Completed job records retained
            keep_failed: Failed job records retained
            keep_cancelled: Cancelled job records retained
            clock: Wall clock (epoch seconds), injectable for tests
        """
        self.redis = redis
        self.name = name
        self.publisher = publisher
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.keep_cancelled = keep_cancelled
        self._clock = clock
        self._prefix = f"q:{name}"

    # Keys

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}"

    @property
    def _pending(self) -> str:
        return f"{self._prefix}:pending"

    @property
    def _active(self) -> str:
        return f"{self._prefix}:active"

    @property
    def _delayed(self) -> str:
        return f"{self._prefix}:delayed"

    @property
    def _paused(self) -> str:
        return f"{self._prefix}:paused"

    @property
    def _seq(self) -> str:
        return f"{self._prefix}:seq"

    def _finished(self, status: JobStatus) -> str:
        return f"{self._prefix}:{status.value}"

    async def _pending_score(self, priority: int) -> int:
        seq = await self.redis.incr(self._seq)
        return priority * PRIORITY_SCALE + seq

    # Producer side

    @_store_errors
    async def enqueue(
        self,
        job_id: str,
        user_id: str,
        data: dict[str, Any],
        priority: int,
        plan: str = "free",
        trace_id: str = "",
    ) -> JobHandle:
        """Add a job to the pending set.

        Lower ``priority`` values are dequeued first; equal priorities keep
        insertion order.
        """
        now = self._clock()
        score = await self._pending_score(priority)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "user_id": user_id,
                    "data": json.dumps(data),
                    "priority": priority,
                    "plan": plan,
                    "trace_id": trace_id,
                    "status": JobStatus.QUEUED.value,
                    "retry_count": 0,
                    "stalled_count": 0,
                    "created_at": now,
                },
            )
            pipe.zadd(self._pending, {job_id: score})
            pipe.zadd(self._user_key(user_id), {job_id: now})
            await pipe.execute()

        position = await self.position(job_id)
        logger.info("queue.job_enqueued", job_id=job_id, priority=priority, position=position)
        return JobHandle(job_id=job_id, priority=priority, position=position)

    @_store_errors
    async def get(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return Job.from_hash(job_id, raw)

    @_store_errors
    async def position(self, job_id: str) -> Optional[int]:
        """1-based position in the pending set, None if not waiting."""
        rank = await self.redis.zrank(self._pending, job_id)
        return None if rank is None else rank + 1

    @_store_errors
    async def cancel(self, job_id: str) -> Job:
        """Cancel a queued or processing job.

        A processing job is only flagged; its worker observes the flag between
        polls and stops.

        Raises:
            JobNotFoundError: Unknown job id
            InvalidJobStateError: Job already completed, failed or cancelled
        """
        job_key = self._job_key(job_id)
        for _ in range(MAX_TRANSACTION_ATTEMPTS):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key)
                    status = await pipe.hget(job_key, "status")
                    if status is None:
                        raise JobNotFoundError(f"Job {job_id} not found")
                    if JobStatus(status).is_terminal:
                        raise InvalidJobStateError(f"Cannot cancel job in status {status}")

                    now = self._clock()
                    pipe.multi()
                    pipe.zrem(self._pending, job_id)
                    pipe.zrem(self._delayed, job_id)
                    pipe.zrem(self._active, job_id)
                    pipe.hset(
                        job_key,
                        mapping={"status": JobStatus.CANCELLED.value, "finished_at": now},
                    )
                    pipe.zadd(self._finished(JobStatus.CANCELLED), {job_id: now})
                    await pipe.execute()
                except WatchError:
                    continue
            break
        else:
            raise StoreUnavailableError(f"Could not cancel job {job_id}: too much contention")

        logger.info("queue.job_cancelled", job_id=job_id, previous_status=status)
        if self.publisher is not None:
            await self.publisher.emit_job_cancelled(job_id)
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} removed while being cancelled")
        await self._trim(JobStatus.CANCELLED, self.keep_cancelled)
        return job

    # Consumer side

    async def _promote_delayed(self) -> int:
        now = self._clock()
        due = await self.redis.zrangebyscore(self._delayed, 0, now)
        promoted = 0
        for job_id in due:
            priority = int(await self.redis.hget(self._job_key(job_id), "priority") or 10)
            score = await self._pending_score(priority)
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._delayed)
                    if await pipe.zscore(self._delayed, job_id) is None:
                        continue
                    pipe.multi()
                    pipe.zrem(self._delayed, job_id)
                    pipe.zadd(self._pending, {job_id: score})
                    await pipe.execute()
                    promoted += 1
                except WatchError:
                    continue
        return promoted

    @_store_errors
    async def dequeue(self, worker_id: str, lease_seconds: float = 300) -> Optional[Job]:
        """Claim the highest-priority pending job, or None if empty or paused."""
        if await self.redis.exists(self._paused):
            return None

        await self._promote_delayed()

        for _ in range(MAX_TRANSACTION_ATTEMPTS):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._pending)
                    head = await pipe.zrange(self._pending, 0, 0)
                    if not head:
                        return None
                    job_id = head[0]
                    now = self._clock()
                    pipe.multi()
                    pipe.zrem(self._pending, job_id)
                    pipe.zadd(self._active, {job_id: now + lease_seconds})
                    pipe.hset(
                        self._job_key(job_id),
                        mapping={
                            "status": JobStatus.PROCESSING.value,
                            "started_at": now,
                            "worker_id": worker_id,
                        },
                    )
                    await pipe.execute()
                except WatchError:
                    continue
            logger.debug("queue.job_dequeued", job_id=job_id, worker_id=worker_id)
            return await self.get(job_id)

        return None

    @_store_errors
    async def heartbeat(self, job_id: str, lease_seconds: float = 300) -> bool:
        """Extend the lease of an active job. False if the job is no longer active."""
        updated = await self.redis.zadd(
            self._active, {job_id: self._clock() + lease_seconds}, xx=True, ch=True
        )
        if updated:
            return True
        return await self.redis.zscore(self._active, job_id) is not None

    @_store_errors
    async def is_cancelled(self, job_id: str) -> bool:
        status = await self.redis.hget(self._job_key(job_id), "status")
        return status == JobStatus.CANCELLED.value

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        allowed: tuple[JobStatus, ...],
        fields: dict[str, Any],
    ) -> bool:
        job_key = self._job_key(job_id)
        for _ in range(MAX_TRANSACTION_ATTEMPTS):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key)
                    current = await pipe.hget(job_key, "status")
                    if current is None or JobStatus(current) not in allowed:
                        return False
                    now = self._clock()
                    pipe.multi()
                    pipe.zrem(self._active, job_id)
                    pipe.zrem(self._pending, job_id)
                    pipe.zrem(self._delayed, job_id)
                    pipe.hset(job_key, mapping={"status": status.value, "finished_at": now, **fields})
                    pipe.zadd(self._finished(status), {job_id: now})
                    await pipe.execute()
                except WatchError:
                    continue
            return True
        raise StoreUnavailableError(f"Could not finish job {job_id}: too much contention")

    async def _trim(self, status: JobStatus, keep: int) -> None:
        """Drop the oldest finished records beyond ``keep``, with their user index entries."""
        key = self._finished(status)
        stale = await self.redis.zrange(key, 0, -(keep + 1))
        if not stale:
            return
        async with self.redis.pipeline(transaction=False) as pipe:
            for job_id in stale:
                pipe.hget(self._job_key(job_id), "user_id")
            owners = await pipe.execute()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *stale)
            pipe.delete(*[self._job_key(job_id) for job_id in stale])
            for job_id, user_id in zip(stale, owners):
                if user_id:
                    pipe.zrem(self._user_key(user_id), job_id)
            await pipe.execute()

    @_store_errors
    async def complete(self, job_id: str) -> bool:
        """Mark a processing job completed. False if it was no longer processing."""
        done = await self._finish(
            job_id, JobStatus.COMPLETED, (JobStatus.PROCESSING,), {"error": ""}
        )
        if done:
            await self._trim(JobStatus.COMPLETED, self.keep_completed)
        return done

    @_store_errors
    async def fail(self, job_id: str, error: str) -> bool:
        """Mark a queued or processing job failed. False if it was already terminal."""
        done = await self._finish(
            job_id,
            JobStatus.FAILED,
            (JobStatus.QUEUED, JobStatus.PROCESSING),
            {"error": error[:1000]},
        )
        if done:
            await self._trim(JobStatus.FAILED, self.keep_failed)
        return done

    @_store_errors
    async def retry(self, job_id: str, delay: float, error: str) -> bool:
        """Move a processing job to the delayed set with retry_count + 1."""
        job_key = self._job_key(job_id)
        for _ in range(MAX_TRANSACTION_ATTEMPTS):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key)
                    current = await pipe.hget(job_key, "status")
                    if current != JobStatus.PROCESSING.value:
                        return False
                    pipe.multi()
                    pipe.zrem(self._active, job_id)
                    pipe.hincrby(job_key, "retry_count", 1)
                    pipe.hset(
                        job_key,
                        mapping={"status": JobStatus.QUEUED.value, "error": error[:1000]},
                    )
                    pipe.zadd(self._delayed, {job_id: self._clock() + delay})
                    await pipe.execute()
                except WatchError:
                    continue
            logger.info("queue.job_retry_scheduled", job_id=job_id, delay_seconds=delay)
            return True
        raise StoreUnavailableError(f"Could not retry job {job_id}: too much contention")

    @_store_errors
    async def release(self, job_id: str) -> None:
        """Drop a worker's claim on a job that reached a terminal state elsewhere."""
        await self.redis.zrem(self._active, job_id)

    @_store_errors
    async def recover_stalled(self, max_stalled_count: int = 1) -> StallRecovery:
        """Return expired leases to the queue, or fail them past the stall limit."""
        recovery = StallRecovery()
        now = self._clock()
        expired = await self.redis.zrangebyscore(self._active, 0, now)

        for job_id in expired:
            job_key = self._job_key(job_id)
            priority = int(await self.redis.hget(job_key, "priority") or 10)
            score = await self._pending_score(priority)
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._active, job_key)
                    deadline = await pipe.zscore(self._active, job_id)
                    if deadline is None or deadline > now:
                        continue
                    stalled = int(await pipe.hget(job_key, "stalled_count") or 0)
                    pipe.multi()
                    pipe.zrem(self._active, job_id)
                    if stalled < max_stalled_count:
                        pipe.hincrby(job_key, "stalled_count", 1)
                        pipe.hset(job_key, "status", JobStatus.QUEUED.value)
                        pipe.zadd(self._pending, {job_id: score})
                    else:
                        pipe.hset(
                            job_key,
                            mapping={
                                "status": JobStatus.FAILED.value,
                                "error": STALLED_ERROR,
                                "finished_at": now,
                            },
                        )
                        pipe.zadd(self._finished(JobStatus.FAILED), {job_id: now})
                    await pipe.execute()
                except WatchError:
                    continue

            if stalled < max_stalled_count:
                recovery.requeued.append(job_id)
                logger.warning("queue.job_stalled_requeued", job_id=job_id, stalled_count=stalled + 1)
            else:
                recovery.failed.append(job_id)
                logger.error("queue.job_stalled_failed", job_id=job_id, stalled_count=stalled)

        if recovery.failed:
            await self._trim(JobStatus.FAILED, self.keep_failed)
        return recovery

    # Operator side

    @_store_errors
    async def stats(self) -> QueueStats:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._pending)
            pipe.zcard(self._active)
            pipe.zcard(self._finished(JobStatus.COMPLETED))
            pipe.zcard(self._finished(JobStatus.FAILED))
            pipe.zcard(self._delayed)
            pipe.zcard(self._finished(JobStatus.CANCELLED))
            pipe.exists(self._paused)
            waiting, active, completed, failed, delayed, cancelled, paused = await pipe.execute()
        return QueueStats(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            cancelled=cancelled,
            paused=bool(paused),
        )

    @_store_errors
    async def pause(self) -> None:
        await self.redis.set(self._paused, "1")
        logger.info("queue.paused", queue=self.name)

    @_store_errors
    async def resume(self) -> None:
        await self.redis.delete(self._paused)
        logger.info("queue.resumed", queue=self.name)

    @_store_errors
    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._paused))

    @_store_errors
    async def drain(self) -> list[str]:
        """Remove every waiting and delayed job. Returns the removed ids.

        Removed jobs are marked cancelled; the caller owns refunding them.
        """
        removed: list[str] = []
        for key in (self._pending, self._delayed):
            for job_id in await self.redis.zrange(key, 0, -1):
                job_key = self._job_key(job_id)
                async with self.redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        if await pipe.zscore(key, job_id) is None:
                            continue
                        now = self._clock()
                        pipe.multi()
                        pipe.zrem(key, job_id)
                        pipe.hset(
                            job_key,
                            mapping={"status": JobStatus.CANCELLED.value, "finished_at": now},
                        )
                        pipe.zadd(self._finished(JobStatus.CANCELLED), {job_id: now})
                        await pipe.execute()
                    except WatchError:
                        continue
                removed.append(job_id)
        if removed:
            await self._trim(JobStatus.CANCELLED, self.keep_cancelled)
        logger.info("queue.drained", queue=self.name, removed=len(removed))
        return removed

    @_store_errors
    async def jobs_for_user(self, user_id: str, limit: int = 20) -> list[Job]:
        """Most recent jobs of a user still retained in the queue store."""
        ids = await self.redis.zrevrange(self._user_key(user_id), 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs
