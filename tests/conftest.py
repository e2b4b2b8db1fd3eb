"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("OPENAI_API_KEY", "")

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from chatroom_ai.db.session import build_sessionmaker
from chatroom_ai.models import Base, Chatroom, User
from chatroom_ai.queue.backoff import BackoffPolicy
from chatroom_ai.queue.job_queue import RedisJobQueue
from chatroom_ai.queue.worker import WorkerPool
from chatroom_ai.services.cache_service import ChatroomCache
from tests.fakes import FakeClock


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite file database; every transaction takes the write lock up front."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(redis_client, clock):
    return RedisJobQueue(
        redis_client,
        name="test-messages",
        lease_seconds=60,
        enqueue_timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def cache(redis_client):
    return ChatroomCache(redis_client, default_ttl=600)


@pytest.fixture
def make_pool(queue, sessionmaker, cache):
    def _make(llm, **kwargs):
        kwargs.setdefault("policy", BackoffPolicy(max_attempts=3, base_delay=2.0, multiplier=2.0))
        kwargs.setdefault("ai_timeout", 5.0)
        kwargs.setdefault("poll_interval", 0.05)
        return WorkerPool(queue=queue, sessionmaker=sessionmaker, llm=llm, cache=cache, **kwargs)

    return _make


async def _create_user(sessionmaker, mobile: str, tier: str = "basic", **fields) -> User:
    async with sessionmaker() as db:
        user = User(mobile_number=mobile, name=f"User {mobile}", subscription_tier=tier, **fields)
        db.add(user)
        await db.commit()
        return user


@pytest_asyncio.fixture
async def user(sessionmaker):
    return await _create_user(sessionmaker, "+15550000001")


@pytest_asyncio.fixture
async def other_user(sessionmaker):
    return await _create_user(sessionmaker, "+15550000002")


@pytest_asyncio.fixture
async def pro_user(sessionmaker):
    return await _create_user(sessionmaker, "+15550000003", tier="pro")


@pytest.fixture
def create_user(sessionmaker):
    async def _create(mobile: str, tier: str = "basic", **fields) -> User:
        return await _create_user(sessionmaker, mobile, tier, **fields)

    return _create


@pytest.fixture
def create_chatroom(sessionmaker):
    async def _create(owner: User, name: str = "General") -> Chatroom:
        async with sessionmaker() as db:
            chatroom = Chatroom(user_id=owner.id, name=name)
            db.add(chatroom)
            await db.commit()
            return chatroom

    return _create


@pytest_asyncio.fixture
async def chatroom(create_chatroom, user):
    return await create_chatroom(user)
