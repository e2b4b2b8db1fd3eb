"""Tests for the worker pool: retries, dead-lettering and idempotent completion."""

import asyncio

from sqlalchemy import func, select

from chatroom_ai.core.exceptions import AIRequestRejected, AITimeout, AIUnavailable
from chatroom_ai.models import Message, MessageKind, ProcessingStatus
from chatroom_ai.queue.worker import JobOutcome
from chatroom_ai.schemas.chatroom import ChatroomSummary
from chatroom_ai.services.message_service import MessageService
from chatroom_ai.services.message_store import MessageStore
from tests.fakes import ScriptedLLM


class SlowLLM:
    async def complete(self, prompt, history):
        await asyncio.sleep(5)
        return "too late"


async def _send(sessionmaker, queue, cache, user, chatroom, content="Hello there") -> Message:
    async with sessionmaker() as db:
        message, _ = await MessageService.send_message(
            db, queue, cache, user, chatroom.id, content, basic_limit=100
        )
    return message


async def _status(sessionmaker, message_id: int) -> str:
    async with sessionmaker() as db:
        message = await MessageStore.get(db, message_id)
        return message.processing_status


async def _ai_replies(sessionmaker, message_id: int) -> list[Message]:
    async with sessionmaker() as db:
        result = await db.execute(
            select(Message).where(
                Message.reply_to_id == message_id,
                Message.kind == MessageKind.ai.value,
            )
        )
        return list(result.scalars().all())


class TestSuccessfulProcessing:
    """Tests for the happy path."""

    async def test_reply_stored_and_job_acked(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        llm = ScriptedLLM("Hi! How can I help?")
        pool = make_pool(llm)
        message = await _send(sessionmaker, queue, cache, user, chatroom)

        outcome = await pool.process(await queue.dequeue())

        assert outcome is JobOutcome.completed
        assert await _status(sessionmaker, message.id) == ProcessingStatus.completed.value
        replies = await _ai_replies(sessionmaker, message.id)
        assert [r.content for r in replies] == ["Hi! How can I help?"]
        assert replies[0].processing_status == ProcessingStatus.completed.value
        assert llm.calls == [("Hello there", [])]
        status = await queue.status()
        assert status.completed == 1
        assert status.active == 0

    async def test_history_excludes_current_message(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        llm = ScriptedLLM("First answer", "Second answer")
        pool = make_pool(llm)
        await _send(sessionmaker, queue, cache, user, chatroom, "First question")
        await pool.process(await queue.dequeue())
        await _send(sessionmaker, queue, cache, user, chatroom, "Second question")

        await pool.process(await queue.dequeue())

        prompt, history = llm.calls[1]
        assert prompt == "Second question"
        assert history == [
            {"role": "user", "content": "First question"},
            {"role": "assistant", "content": "First answer"},
        ]

    async def test_history_is_capped(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        llm = ScriptedLLM("ok")
        pool = make_pool(llm, history_limit=2)
        for n in range(3):
            await _send(sessionmaker, queue, cache, user, chatroom, f"question {n}")
            await pool.process(await queue.dequeue())

        _, history = llm.calls[-1]
        assert [h["content"] for h in history] == ["question 1", "ok"]

    async def test_completion_invalidates_listing(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        pool = make_pool(ScriptedLLM("ok"))
        await _send(sessionmaker, queue, cache, user, chatroom)
        await cache.set(
            user.id,
            [ChatroomSummary(id=chatroom.id, name="General", created_at="2026-01-01T00:00:00Z")],
        )

        await pool.process(await queue.dequeue())

        assert await cache.get(user.id) is None


class TestRetries:
    """Tests for transient failures and the backoff schedule."""

    async def test_two_failures_then_success(
        self, sessionmaker, queue, cache, user, chatroom, make_pool, clock
    ):
        llm = ScriptedLLM(AIUnavailable("down"), AITimeout("slow"), "Finally")
        pool = make_pool(llm)
        message = await _send(sessionmaker, queue, cache, user, chatroom)

        assert await pool.process(await queue.dequeue()) is JobOutcome.retry
        assert await _status(sessionmaker, message.id) == ProcessingStatus.processing.value
        assert await queue.dequeue() is None

        clock.advance(2.0)
        lease = await queue.dequeue()
        assert lease.attempt == 2
        assert await pool.process(lease) is JobOutcome.retry

        clock.advance(2.0)
        assert await queue.dequeue() is None
        clock.advance(2.0)
        lease = await queue.dequeue()
        assert lease.attempt == 3
        assert await pool.process(lease) is JobOutcome.completed

        assert await _status(sessionmaker, message.id) == ProcessingStatus.completed.value
        assert len(await _ai_replies(sessionmaker, message.id)) == 1

    async def test_retry_budget_exhausted(
        self, sessionmaker, queue, cache, user, chatroom, make_pool, clock
    ):
        pool = make_pool(ScriptedLLM(AIUnavailable("down")))
        message = await _send(sessionmaker, queue, cache, user, chatroom)

        outcomes = []
        for delay in (2.0, 4.0, 0.0):
            outcomes.append(await pool.process(await queue.dequeue()))
            clock.advance(delay)

        assert outcomes == [JobOutcome.retry, JobOutcome.retry, JobOutcome.failed]
        assert await _status(sessionmaker, message.id) == ProcessingStatus.failed.value
        assert await _ai_replies(sessionmaker, message.id) == []
        status = await queue.status()
        assert status.failed == 1
        assert status.waiting == status.delayed == status.active == 0

    async def test_ai_timeout_is_retried(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        pool = make_pool(SlowLLM(), ai_timeout=0.05)
        message = await _send(sessionmaker, queue, cache, user, chatroom)

        outcome = await pool.process(await queue.dequeue())

        assert outcome is JobOutcome.retry
        assert await _status(sessionmaker, message.id) == ProcessingStatus.processing.value
        job = await queue.get_job("1")
        assert "exceeded" in job["last_error"]

    async def test_rejected_request_fails_without_retry(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        llm = ScriptedLLM(AIRequestRejected("content policy"))
        pool = make_pool(llm)
        message = await _send(sessionmaker, queue, cache, user, chatroom)

        outcome = await pool.process(await queue.dequeue())

        assert outcome is JobOutcome.failed
        assert len(llm.calls) == 1
        assert await _status(sessionmaker, message.id) == ProcessingStatus.failed.value
        assert (await queue.status()).failed == 1


class TestPoisonAndRedelivery:
    """Tests for malformed payloads and duplicate deliveries."""

    async def test_malformed_payload_dead_lettered_at_once(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        llm = ScriptedLLM("never used")
        pool = make_pool(llm)
        async with sessionmaker() as db:
            message = Message(chatroom_id=chatroom.id, user_id=user.id, content="orphan")
            db.add(message)
            await db.commit()
        await queue.enqueue(f'{{"message_id": {message.id}, "chatroom_id": "nope"}}')

        lease = await queue.dequeue()
        outcome = await pool.process(lease)

        assert lease.attempt == 1
        assert outcome is JobOutcome.failed
        assert llm.calls == []
        assert await _status(sessionmaker, message.id) == ProcessingStatus.failed.value
        job = await queue.get_job(lease.job_id)
        assert job["state"] == "failed"
        assert job["last_error"] == "malformed payload"

    async def test_non_json_payload(self, queue, make_pool):
        pool = make_pool(ScriptedLLM("never used"))
        await queue.enqueue("not json at all")

        assert await pool.process(await queue.dequeue()) is JobOutcome.failed
        assert (await queue.status()).failed == 1

    async def test_late_duplicate_does_not_reply_twice(
        self, sessionmaker, queue, cache, user, chatroom, make_pool, clock
    ):
        """A worker whose lease expired finishes after the redelivery completed."""
        llm = ScriptedLLM("only reply")
        pool = make_pool(llm)
        message = await _send(sessionmaker, queue, cache, user, chatroom)
        stale = await queue.dequeue()
        stale_result = await pool.execute(stale)

        clock.advance(queue.lease_seconds + 1)
        fresh = await queue.dequeue()
        assert await pool.process(fresh) is JobOutcome.completed

        assert await pool.settle(stale, stale_result) is JobOutcome.skipped
        assert len(await _ai_replies(sessionmaker, message.id)) == 1
        assert await _status(sessionmaker, message.id) == ProcessingStatus.completed.value

    async def test_redelivery_of_completed_message_is_skipped(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        llm = ScriptedLLM("reply")
        pool = make_pool(llm)
        message = await _send(sessionmaker, queue, cache, user, chatroom)
        await pool.process(await queue.dequeue())
        await queue.enqueue(
            f'{{"message_id": {message.id}, "chatroom_id": {chatroom.id}, '
            f'"user_id": {user.id}, "content": "Hello there"}}'
        )

        assert await pool.process(await queue.dequeue()) is JobOutcome.skipped
        assert len(llm.calls) == 1
        assert len(await _ai_replies(sessionmaker, message.id)) == 1

    async def test_redelivery_past_budget_fails(
        self, sessionmaker, queue, cache, user, chatroom, make_pool, clock
    ):
        """Crashed attempts count: a fourth delivery is failed without calling the AI."""
        llm = ScriptedLLM("reply")
        pool = make_pool(llm)
        message = await _send(sessionmaker, queue, cache, user, chatroom)
        for _ in range(3):
            await queue.dequeue()
            clock.advance(queue.lease_seconds + 1)

        lease = await queue.dequeue()
        assert lease.attempt == 4
        assert await pool.process(lease) is JobOutcome.failed
        assert llm.calls == []
        assert await _status(sessionmaker, message.id) == ProcessingStatus.failed.value


class TestPoolLifecycle:
    """Tests for the background loop and maintenance."""

    async def test_pool_processes_jobs_until_stopped(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        pool = make_pool(ScriptedLLM("background reply"), concurrency=3)
        messages = [
            await _send(sessionmaker, queue, cache, user, chatroom, f"question {n}")
            for n in range(4)
        ]

        await pool.start()
        assert pool.running
        try:
            for _ in range(200):
                statuses = [await _status(sessionmaker, m.id) for m in messages]
                if all(s == ProcessingStatus.completed.value for s in statuses):
                    break
                await asyncio.sleep(0.05)
        finally:
            await pool.stop(grace=5)

        assert not pool.running
        assert statuses == [ProcessingStatus.completed.value] * 4
        async with sessionmaker() as db:
            ai_count = await db.scalar(
                select(func.count(Message.id)).where(Message.kind == MessageKind.ai.value)
            )
        assert ai_count == 4

    async def test_cleanup_reports_stuck_messages(
        self, sessionmaker, queue, cache, user, chatroom, make_pool, clock
    ):
        pool = make_pool(ScriptedLLM("reply"), stuck_after=-3600)
        message = await _send(sessionmaker, queue, cache, user, chatroom)
        async with sessionmaker() as db:
            await MessageStore.mark_processing(db, message.id)
            await db.commit()
        await queue.ack(await queue.dequeue())
        clock.advance(2 * 86400)

        removed, stuck = await pool.cleanup()

        assert removed == 1
        assert stuck == 1

    async def test_cleanup_ignores_fresh_processing(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        pool = make_pool(ScriptedLLM("reply"))
        message = await _send(sessionmaker, queue, cache, user, chatroom)
        async with sessionmaker() as db:
            await MessageStore.mark_processing(db, message.id)
            await db.commit()

        assert await pool.cleanup() == (0, 0)

    async def test_cleanup_reports_message_never_picked_up(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        """A pending message whose job was lost still shows up in the sweep."""
        pool = make_pool(ScriptedLLM("reply"), stuck_after=-3600)
        await _send(sessionmaker, queue, cache, user, chatroom)

        _, stuck = await pool.cleanup()

        assert stuck == 1

    async def test_cleanup_skips_settled_messages(
        self, sessionmaker, queue, cache, user, chatroom, make_pool
    ):
        pool = make_pool(ScriptedLLM("reply"), stuck_after=-3600)
        await _send(sessionmaker, queue, cache, user, chatroom)
        await pool.process(await queue.dequeue())

        _, stuck = await pool.cleanup()

        assert stuck == 0
