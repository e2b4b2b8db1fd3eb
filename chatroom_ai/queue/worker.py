"""
queue/worker.py
---------------
Fixed-size pool of asyncio workers that turn queued jobs into AI replies.

Per job:
  1. execute()  — parse payload, move the message to 'processing' (committed
                  before the AI call), build history, call the AI service
                  under a timeout. Produces a JobResult; never touches the
                  queue.
  2. settle()   — branch on the result:
                    COMPLETED → store reply + flip to 'completed', ack
                    RETRY     → nack with the backoff delay
                    FAILED    → flip to 'failed', dead-letter
                    SKIPPED   → ack (message already settled elsewhere)

A worker that crashes mid-job simply never settles its lease; the lease
expires and another worker picks the job up again.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatroom_ai.core.exceptions import AIServiceError, AITimeout, CacheUnavailable
from chatroom_ai.core.logging import get_logger
from chatroom_ai.models.message import MessageKind
from chatroom_ai.queue.backoff import BackoffPolicy
from chatroom_ai.queue.job_queue import Lease, RedisJobQueue
from chatroom_ai.schemas.job import MessageJob
from chatroom_ai.services.cache_service import ChatroomCache
from chatroom_ai.services.llm_service import CompletionService
from chatroom_ai.services.message_store import MessageStore

logger = get_logger(__name__)


class JobOutcome(str, Enum):
    completed = "completed"
    retry = "retry"
    failed = "failed"
    skipped = "skipped"


@dataclass
class JobResult:
    outcome: JobOutcome
    message_id: int | None = None
    job: MessageJob | None = None
    reply: str | None = None
    error: str = ""


class WorkerPool:

    def __init__(
        self,
        queue: RedisJobQueue,
        sessionmaker: async_sessionmaker[AsyncSession],
        llm: CompletionService,
        cache: ChatroomCache,
        policy: BackoffPolicy | None = None,
        concurrency: int = 5,
        ai_timeout: float = 30.0,
        history_limit: int = 10,
        poll_interval: float = 1.0,
        cleanup_interval: float = 3600.0,
        retention_seconds: float = 86400.0,
        stuck_after: float | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._sessionmaker = sessionmaker
        self._llm = llm
        self._cache = cache
        self.policy = policy or BackoffPolicy()
        self.concurrency = concurrency
        self._ai_timeout = ai_timeout
        self._history_limit = history_limit
        self._poll_interval = poll_interval
        self._cleanup_interval = cleanup_interval
        self._retention_seconds = retention_seconds
        self._stuck_after = (
            stuck_after
            if stuck_after is not None
            else queue.lease_seconds + self.policy.delay_for(self.policy.max_attempts)
        )
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(worker_id), name=f"worker-{worker_id}")
            for worker_id in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="queue-cleanup"))
        logger.info(
            "Worker pool started",
            queue=self._queue.name,
            concurrency=self.concurrency,
            max_attempts=self.policy.max_attempts,
        )

    async def stop(self, grace: float = 30.0) -> None:
        """Let in-flight jobs finish for up to `grace` seconds, then cancel."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped", cancelled=len(pending))

    async def _run(self, worker_id: int) -> None:
        log = logger.bind(worker_id=worker_id)
        while not self._stopping.is_set():
            try:
                lease = await self._queue.dequeue(
                    timeout=self._poll_interval,
                    poll_interval=min(0.5, self._poll_interval),
                )
            except RedisError as exc:
                log.error("Dequeue failed", error=str(exc))
                await self._pause()
                continue
            if lease is None:
                continue

            try:
                outcome = await self.process(lease)
            except Exception:
                # Lease stays unsettled and expires; the job is redelivered
                log.exception("Job processing crashed", job_id=lease.job_id)
                continue
            log.info("Job settled", job_id=lease.job_id, attempt=lease.attempt, outcome=outcome.value)

    async def _pause(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass

    # ── Job handling ──────────────────────────────────────────────────────────

    async def process(self, lease: Lease) -> JobOutcome:
        result = await self.execute(lease)
        return await self.settle(lease, result)

    async def execute(self, lease: Lease) -> JobResult:
        log = logger.bind(job_id=lease.job_id, attempt=lease.attempt)

        try:
            job = MessageJob.model_validate_json(lease.data)
        except ValidationError as exc:
            log.error("Malformed job payload", error=str(exc))
            return JobResult(
                JobOutcome.failed,
                message_id=_recover_message_id(lease.data),
                error="malformed payload",
            )

        if lease.attempt > self.policy.max_attempts:
            # Redelivered after a crash with the budget already spent
            return JobResult(
                JobOutcome.failed,
                message_id=job.message_id,
                job=job,
                error="retry budget exhausted",
            )

        try:
            async with self._sessionmaker() as db:
                claimed = await MessageStore.mark_processing(db, job.message_id)
                await db.commit()
                if not claimed:
                    return JobResult(JobOutcome.skipped, message_id=job.message_id, job=job)
                rows = await MessageStore.recent_history(
                    db, job.chatroom_id, before_id=job.message_id, limit=self._history_limit
                )
            history = [
                {
                    "role": "user" if row.kind == MessageKind.user.value else "assistant",
                    "content": row.content,
                }
                for row in rows
            ]
            log.info("Processing message", message_id=job.message_id, history=len(history))
            reply = await self._complete(job.content, history)
        except AIServiceError as exc:
            if not exc.retryable:
                return JobResult(JobOutcome.failed, job.message_id, job, error=exc.message)
            return self._retry_or_fail(job, lease, exc.message)
        except SQLAlchemyError as exc:
            log.error("Database error while processing", error=str(exc))
            return self._retry_or_fail(job, lease, f"database error: {exc}")

        return JobResult(JobOutcome.completed, job.message_id, job, reply=reply)

    async def _complete(self, prompt: str, history: list[dict[str, str]]) -> str:
        try:
            return await asyncio.wait_for(
                self._llm.complete(prompt, history), timeout=self._ai_timeout
            )
        except asyncio.TimeoutError as exc:
            raise AITimeout(f"AI completion exceeded {self._ai_timeout}s") from exc

    def _retry_or_fail(self, job: MessageJob, lease: Lease, error: str) -> JobResult:
        if self.policy.should_retry(lease.attempt):
            return JobResult(JobOutcome.retry, job.message_id, job, error=error)
        return JobResult(JobOutcome.failed, job.message_id, job, error=error)

    async def settle(self, lease: Lease, result: JobResult) -> JobOutcome:
        log = logger.bind(job_id=lease.job_id, attempt=lease.attempt, message_id=result.message_id)

        if result.outcome is JobOutcome.completed:
            job = result.job
            try:
                async with self._sessionmaker() as db:
                    ai_message = await MessageStore.complete_with_reply(
                        db,
                        message_id=job.message_id,
                        chatroom_id=job.chatroom_id,
                        user_id=job.user_id,
                        reply=result.reply or "",
                    )
                    if ai_message is not None:
                        await db.commit()
            except SQLAlchemyError as exc:
                log.error("Storing AI reply failed", error=str(exc))
                return await self.settle(
                    lease, self._retry_or_fail(job, lease, f"database error: {exc}")
                )

            await self._queue.ack(lease)
            if ai_message is None:
                log.info("Message already settled by another delivery")
                return JobOutcome.skipped
            await self._invalidate(job.user_id)
            log.info("Message completed", reply_id=ai_message.id)
            return JobOutcome.completed

        if result.outcome is JobOutcome.retry:
            delay = self.policy.delay_for(lease.attempt)
            await self._queue.nack(lease, delay=delay, reason=result.error)
            log.warning("Job attempt failed, retry scheduled", delay=delay, error=result.error)
            return JobOutcome.retry

        if result.outcome is JobOutcome.failed:
            if result.message_id is not None:
                async with self._sessionmaker() as db:
                    await MessageStore.mark_failed(db, result.message_id)
                    await db.commit()
            await self._queue.dead_letter(lease, reason=result.error)
            log.error("Job failed permanently", error=result.error)
            return JobOutcome.failed

        await self._queue.ack(lease)
        log.info("Message already settled, job dropped")
        return JobOutcome.skipped

    async def _invalidate(self, user_id: int) -> None:
        try:
            await self._cache.invalidate(user_id)
        except CacheUnavailable:
            # Listing stays stale until its TTL; the reply itself is durable
            logger.error("Chatroom cache left stale after completion", user_id=user_id)

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def cleanup(self) -> tuple[int, int]:
        """
        Prune old terminal job bookkeeping and report open messages whose
        status has not moved in `stuck_after` seconds.
        Returns (jobs_removed, stuck_messages).
        """
        removed = await self._queue.clean(self._retention_seconds)

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._stuck_after)
        async with self._sessionmaker() as db:
            stuck = await MessageStore.find_stuck(db, cutoff)
        for message in stuck:
            logger.warning(
                "Message stuck",
                message_id=message.id,
                status=message.processing_status,
                chatroom_id=message.chatroom_id,
                since=message.updated_at.isoformat(),
            )
        return removed, len(stuck)

    async def _cleanup_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._cleanup_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.cleanup()
            except (RedisError, SQLAlchemyError) as exc:
                logger.error("Queue cleanup failed", error=str(exc))


def _recover_message_id(data: str) -> int | None:
    try:
        value = json.loads(data).get("message_id")
    except (ValueError, AttributeError):
        return None
    return value if isinstance(value, int) else None
