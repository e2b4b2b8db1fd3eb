"""
queue/job_queue.py
------------------
Durable, at-least-once job queue on Redis with visibility leases.

Key layout (prefix = "queue:<name>"):
  <prefix>:id            INCR counter for job ids
  <prefix>:job:<id>      hash  data | attempts | token | state | last_error
                               | created_at | finished_at
  <prefix>:waiting       zset  job id → time it becomes visible
                               (due jobs and backoff-delayed jobs)
  <prefix>:active        zset  job id → lease deadline
  <prefix>:completed     zset  job id → finish time (bounded)
  <prefix>:failed        zset  job id → finish time (bounded dead-letter set)

Lease protocol:
  - Claiming moves a job from waiting to active and bumps its attempt
    counter in one WATCH/MULTI transaction, so a job is leased to exactly
    one consumer at a time.
  - A job left in active past its deadline is moved back to waiting by the
    next consumer that polls (crash recovery).
  - Every claim writes a fresh random token. ack / nack / dead_letter only
    apply while the caller's token is still the job's token; a worker whose
    lease expired and was re-claimed elsewhere gets False back.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from chatroom_ai.core.exceptions import QueueUnavailable
from chatroom_ai.core.logging import get_logger
from chatroom_ai.schemas.job import QueueStatus

logger = get_logger(__name__)

Clock = Callable[[], float]

_CLAIM_BATCH = 10


@dataclass(frozen=True)
class Lease:
    job_id: str
    token: str
    attempt: int
    data: str
    deadline: float


class RedisJobQueue:

    def __init__(
        self,
        client: "redis.Redis",
        name: str = "message-processing",
        lease_seconds: float = 60.0,
        enqueue_timeout: float = 10.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
        clock: Clock = time.time,
    ) -> None:
        self._redis = client
        self.name = name
        self.lease_seconds = lease_seconds
        self._enqueue_timeout = enqueue_timeout
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._clock = clock

        prefix = f"queue:{name}"
        self._id_key = f"{prefix}:id"
        self._job_prefix = f"{prefix}:job:"
        self._waiting = f"{prefix}:waiting"
        self._active = f"{prefix}:active"
        self._completed = f"{prefix}:completed"
        self._failed = f"{prefix}:failed"

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    # ── Producer side ─────────────────────────────────────────────────────────

    async def enqueue(self, data: str) -> str:
        """
        Store a job and make it visible immediately.

        Raises:
            QueueUnavailable: broker unreachable or slower than the timeout.
        """
        try:
            job_id = await asyncio.wait_for(self._enqueue(data), timeout=self._enqueue_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Enqueue timed out", queue=self.name, timeout=self._enqueue_timeout)
            raise QueueUnavailable("Queue operation timed out") from exc
        except RedisError as exc:
            logger.error("Enqueue failed", queue=self.name, error=str(exc))
            raise QueueUnavailable(f"Queue unavailable: {exc}") from exc

        logger.info("Job enqueued", queue=self.name, job_id=job_id)
        return job_id

    async def _enqueue(self, data: str) -> str:
        job_id = str(await self._redis.incr(self._id_key))
        now = self._clock()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "data": data,
                    "attempts": 0,
                    "token": "",
                    "state": "waiting",
                    "created_at": now,
                },
            )
            pipe.zadd(self._waiting, {job_id: now})
            await pipe.execute()
        return job_id

    # ── Consumer side ─────────────────────────────────────────────────────────

    async def dequeue(self, timeout: float = 0.0, poll_interval: float = 0.5) -> Lease | None:
        """
        Claim the next visible job, waiting up to `timeout` seconds.
        Returns None when nothing became visible in time.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            await self.requeue_expired()
            lease = await self._claim_next()
            if lease is not None:
                return lease
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll_interval, remaining))

    async def requeue_expired(self) -> int:
        """Move jobs whose lease ran out back to waiting."""
        now = self._clock()
        expired = await self._redis.zrangebyscore(self._active, "-inf", now)
        moved = 0
        for job_id in expired:
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._active)
                    deadline = await pipe.zscore(self._active, job_id)
                    if deadline is None or deadline > now:
                        await pipe.unwatch()
                        continue
                    pipe.multi()
                    pipe.zrem(self._active, job_id)
                    pipe.zadd(self._waiting, {job_id: now})
                    pipe.hset(self._job_key(job_id), mapping={"state": "waiting", "token": ""})
                    await pipe.execute()
                    moved += 1
                except WatchError:
                    continue
        if moved:
            logger.warning("Requeued jobs with expired leases", queue=self.name, count=moved)
        return moved

    async def _claim_next(self) -> Lease | None:
        now = self._clock()
        candidates = await self._redis.zrangebyscore(
            self._waiting, "-inf", now, start=0, num=_CLAIM_BATCH
        )
        for job_id in candidates:
            lease = await self._try_claim(job_id, now)
            if lease is not None:
                return lease
        return None

    async def _try_claim(self, job_id: str, now: float) -> Lease | None:
        token = uuid.uuid4().hex
        deadline = now + self.lease_seconds
        job_key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self._waiting)
                visible_at = await pipe.zscore(self._waiting, job_id)
                if visible_at is None or visible_at > now:
                    await pipe.unwatch()
                    return None
                pipe.multi()
                pipe.zrem(self._waiting, job_id)
                pipe.zadd(self._active, {job_id: deadline})
                pipe.hincrby(job_key, "attempts", 1)
                pipe.hset(job_key, mapping={"token": token, "state": "active"})
                pipe.hget(job_key, "data")
                results = await pipe.execute()
            except WatchError:
                return None

        attempt, data = int(results[2]), results[4]
        if data is None:
            # Bookkeeping was cleaned while the id was still indexed
            await self._redis.zrem(self._active, job_id)
            logger.warning("Dropped job without payload", queue=self.name, job_id=job_id)
            return None

        logger.debug("Job claimed", queue=self.name, job_id=job_id, attempt=attempt)
        return Lease(job_id=job_id, token=token, attempt=attempt, data=data, deadline=deadline)

    async def ack(self, lease: Lease) -> bool:
        """Mark the job completed. False if the lease is no longer ours."""
        now = self._clock()
        done = await self._finish(
            lease,
            target=self._completed,
            state="completed",
            fields={"finished_at": now},
            score=now,
        )
        if done:
            await self._trim(self._completed, self._keep_completed)
        return done

    async def nack(self, lease: Lease, delay: float = 0.0, reason: str = "") -> bool:
        """Release the job for another attempt once `delay` seconds have passed."""
        visible_at = self._clock() + max(0.0, delay)
        return await self._finish(
            lease,
            target=self._waiting,
            state="waiting",
            fields={"last_error": reason},
            score=visible_at,
        )

    async def dead_letter(self, lease: Lease, reason: str = "") -> bool:
        """Move the job to the bounded failed set; it is never retried again."""
        now = self._clock()
        done = await self._finish(
            lease,
            target=self._failed,
            state="failed",
            fields={"last_error": reason, "finished_at": now},
            score=now,
        )
        if done:
            await self._trim(self._failed, self._keep_failed)
        return done

    async def _finish(
        self,
        lease: Lease,
        target: str,
        state: str,
        fields: dict[str, Any],
        score: float,
    ) -> bool:
        job_key = self._job_key(lease.job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                token = await pipe.hget(job_key, "token")
                if token != lease.token:
                    await pipe.unwatch()
                    logger.warning(
                        "Lease lost before settle",
                        queue=self.name,
                        job_id=lease.job_id,
                        state=state,
                    )
                    return False
                pipe.multi()
                pipe.zrem(self._active, lease.job_id)
                pipe.zadd(target, {lease.job_id: score})
                pipe.hset(job_key, mapping={"state": state, "token": "", **fields})
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def _trim(self, key: str, keep: int) -> None:
        overflow = await self._redis.zcard(key) - keep
        if overflow <= 0:
            return
        evicted = await self._redis.zpopmin(key, overflow)
        job_ids = [job_id for job_id, _ in evicted]
        if job_ids:
            await self._redis.delete(*(self._job_key(job_id) for job_id in job_ids))

    # ── Inspection & maintenance ──────────────────────────────────────────────

    async def get_job(self, job_id: str) -> dict[str, str]:
        return await self._redis.hgetall(self._job_key(job_id))

    async def status(self) -> QueueStatus:
        now = self._clock()
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcount(self._waiting, "-inf", now)
            pipe.zcount(self._waiting, f"({now}", "+inf")
            pipe.zcard(self._active)
            pipe.zcard(self._completed)
            pipe.zcard(self._failed)
            waiting, delayed, active, completed, failed = await pipe.execute()
        return QueueStatus(
            waiting=waiting,
            delayed=delayed,
            active=active,
            completed=completed,
            failed=failed,
        )

    async def clean(self, grace_seconds: float) -> int:
        """Drop completed and failed bookkeeping older than grace_seconds."""
        cutoff = self._clock() - grace_seconds
        removed = 0
        for key in (self._completed, self._failed):
            job_ids = await self._redis.zrangebyscore(key, "-inf", cutoff)
            if not job_ids:
                continue
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(key, *job_ids)
                pipe.delete(*(self._job_key(job_id) for job_id in job_ids))
                await pipe.execute()
            removed += len(job_ids)
        logger.info("Queue cleanup completed", queue=self.name, removed=removed)
        return removed
