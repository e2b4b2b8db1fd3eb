"""Tests for the daily quota gate."""

import asyncio
from datetime import date, timedelta

import pytest

from chatroom_ai.core.exceptions import NotFound, QuotaExceeded
from chatroom_ai.models import User
from chatroom_ai.services.quota_service import QuotaService
from chatroom_ai.services.subscription_service import daily_limit_for

TODAY = date(2026, 3, 14)


async def _stored_quota(sessionmaker, user_id: int) -> tuple[int, date | None]:
    async with sessionmaker() as db:
        user = await db.get(User, user_id)
        return user.daily_message_count, user.last_message_date


async def _admit(sessionmaker, user_id: int, limit: int | None, today: date = TODAY) -> bool:
    async with sessionmaker() as db:
        try:
            await QuotaService.admit(db, user_id, "basic", limit, today=today)
        except QuotaExceeded:
            return False
        await db.commit()
        return True


class TestDailyLimit:
    """Tests for tier → daily limit mapping."""

    def test_basic_tier_is_limited(self):
        assert daily_limit_for("basic", 5) == 5

    def test_pro_tier_is_unlimited(self):
        assert daily_limit_for("pro", 5) is None

    def test_unknown_tier_treated_as_basic(self):
        assert daily_limit_for("enterprise-trial", 7) == 7


class TestQuotaService:
    """Tests for QuotaService."""

    async def test_last_slot_admitted_then_rejected(self, sessionmaker, create_user):
        """4 of 5 used: the fifth is admitted, the sixth rejected without changing the count."""
        user = await create_user("+15551110001", daily_message_count=4, last_message_date=TODAY)

        async with sessionmaker() as db:
            admission = await QuotaService.admit(db, user.id, "basic", 5, today=TODAY)
            await db.commit()
        assert admission.count == 5
        assert admission.remaining == 0

        async with sessionmaker() as db:
            with pytest.raises(QuotaExceeded) as exc_info:
                await QuotaService.admit(db, user.id, "basic", 5, today=TODAY)
        assert exc_info.value.status_code == 429
        assert exc_info.value.count == 5
        assert "Daily message limit of 5 reached" in exc_info.value.message

        assert await _stored_quota(sessionmaker, user.id) == (5, TODAY)

    async def test_new_day_resets_counter(self, sessionmaker, create_user):
        yesterday = TODAY - timedelta(days=1)
        user = await create_user("+15551110002", daily_message_count=5, last_message_date=yesterday)

        assert await _admit(sessionmaker, user.id, 5)
        assert await _stored_quota(sessionmaker, user.id) == (1, TODAY)

    async def test_first_message_ever(self, sessionmaker, user):
        assert await _admit(sessionmaker, user.id, 5)
        assert await _stored_quota(sessionmaker, user.id) == (1, TODAY)

    async def test_concurrent_requests_never_exceed_limit(self, sessionmaker, user):
        """Eight simultaneous sends against a limit of five admit exactly five."""
        results = await asyncio.gather(*(_admit(sessionmaker, user.id, 5) for _ in range(8)))

        assert results.count(True) == 5
        assert results.count(False) == 3
        assert await _stored_quota(sessionmaker, user.id) == (5, TODAY)

    async def test_concurrent_requests_at_rollover(self, sessionmaker, create_user):
        """Stale counter from yesterday is reset once, not once per request."""
        user = await create_user(
            "+15551110003",
            daily_message_count=5,
            last_message_date=TODAY - timedelta(days=1),
        )

        results = await asyncio.gather(*(_admit(sessionmaker, user.id, 2) for _ in range(4)))

        assert results.count(True) == 2
        assert await _stored_quota(sessionmaker, user.id) == (2, TODAY)

    async def test_unlimited_tier_leaves_counter_alone(self, sessionmaker, pro_user):
        async with sessionmaker() as db:
            admission = await QuotaService.admit(db, pro_user.id, "pro", None, today=TODAY)
            await db.commit()

        assert admission.count is None
        assert admission.remaining is None
        assert await _stored_quota(sessionmaker, pro_user.id) == (0, None)

    async def test_zero_limit_rejects_everything(self, sessionmaker, user):
        assert not await _admit(sessionmaker, user.id, 0)
        assert await _stored_quota(sessionmaker, user.id) == (0, None)

    async def test_unknown_user(self, sessionmaker):
        async with sessionmaker() as db:
            with pytest.raises(NotFound):
                await QuotaService.admit(db, 999_999, "basic", 5, today=TODAY)

    async def test_refund_gives_slot_back(self, sessionmaker, create_user):
        user = await create_user("+15551110004", daily_message_count=5, last_message_date=TODAY)

        async with sessionmaker() as db:
            assert await QuotaService.refund(db, user.id, today=TODAY)
            await db.commit()
        assert await _stored_quota(sessionmaker, user.id) == (4, TODAY)
        assert await _admit(sessionmaker, user.id, 5)

    async def test_refund_ignores_previous_day(self, sessionmaker, create_user):
        yesterday = TODAY - timedelta(days=1)
        user = await create_user("+15551110005", daily_message_count=3, last_message_date=yesterday)

        async with sessionmaker() as db:
            assert not await QuotaService.refund(db, user.id, today=TODAY)
            await db.commit()
        assert await _stored_quota(sessionmaker, user.id) == (3, yesterday)
