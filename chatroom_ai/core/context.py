"""
core/context.py
---------------
Explicitly constructed application context.

Everything long-lived (engine, session factory, Redis client, job queue,
chatroom cache, AI service) is built here and handed to whoever needs it:
the FastAPI lifespan stores the context on app.state, the worker entry
point keeps it in a local. Nothing opens a connection at import time.
"""

from dataclasses import dataclass

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatroom_ai.core.config import Settings
from chatroom_ai.core.logging import get_logger
from chatroom_ai.core.redis import close_redis, connect_redis
from chatroom_ai.db.session import build_engine, build_sessionmaker
from chatroom_ai.queue.backoff import BackoffPolicy
from chatroom_ai.queue.job_queue import RedisJobQueue
from chatroom_ai.queue.worker import WorkerPool
from chatroom_ai.services.cache_service import ChatroomCache
from chatroom_ai.services.llm_service import CompletionService, LLMService

logger = get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]
    redis: "redis.Redis"
    queue: RedisJobQueue
    cache: ChatroomCache
    llm: CompletionService

    @classmethod
    async def create(cls, settings: Settings) -> "AppContext":
        engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        client = await connect_redis(settings.REDIS_URL)
        return cls.from_parts(settings, engine, client, LLMService(settings))

    @classmethod
    def from_parts(
        cls,
        settings: Settings,
        engine: AsyncEngine,
        client: "redis.Redis",
        llm: CompletionService,
        queue: RedisJobQueue | None = None,
    ) -> "AppContext":
        """Assemble a context from already-open resources (tests use this)."""
        queue = queue or RedisJobQueue(
            client,
            name=settings.QUEUE_NAME,
            lease_seconds=settings.QUEUE_LEASE_SECONDS,
            enqueue_timeout=settings.QUEUE_ENQUEUE_TIMEOUT_SECONDS,
            keep_completed=settings.QUEUE_KEEP_COMPLETED,
            keep_failed=settings.QUEUE_KEEP_FAILED,
        )
        return cls(
            settings=settings,
            engine=engine,
            sessionmaker=build_sessionmaker(engine),
            redis=client,
            queue=queue,
            cache=ChatroomCache(client, default_ttl=settings.CACHE_TTL_SECONDS),
            llm=llm,
        )

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.settings.JOB_MAX_ATTEMPTS,
            base_delay=self.settings.JOB_BACKOFF_BASE_SECONDS,
            multiplier=self.settings.JOB_BACKOFF_MULTIPLIER,
        )

    def build_worker_pool(self) -> WorkerPool:
        return WorkerPool(
            queue=self.queue,
            sessionmaker=self.sessionmaker,
            llm=self.llm,
            cache=self.cache,
            policy=self.backoff_policy(),
            concurrency=self.settings.WORKER_CONCURRENCY,
            ai_timeout=self.settings.AI_TIMEOUT_SECONDS,
            history_limit=self.settings.AI_HISTORY_LIMIT,
            poll_interval=self.settings.WORKER_POLL_INTERVAL_SECONDS,
            cleanup_interval=self.settings.QUEUE_CLEANUP_INTERVAL_SECONDS,
            retention_seconds=self.settings.QUEUE_RETENTION_SECONDS,
        )

    async def close(self) -> None:
        await close_redis(self.redis)
        logger.info("Disposing DB engine")
        await self.engine.dispose()
