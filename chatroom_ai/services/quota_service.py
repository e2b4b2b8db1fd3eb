"""
services/quota_service.py
-------------------------
Per-user daily message quota.

Concurrency invariant:
  The reset-then-check-then-increment is ONE conditional UPDATE statement.
  The database serialises concurrent updates of the same users row, and
  each UPDATE re-evaluates its WHERE clause against the committed row, so:
    - two requests at day rollover cannot both reset the counter;
    - two requests competing for the last slot cannot both be admitted.
  Never replace this with a SELECT followed by an UPDATE.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatroom_ai.core.exceptions import NotFound, QuotaExceeded
from chatroom_ai.core.logging import get_logger
from chatroom_ai.models.user import User

logger = get_logger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class Admission:
    """Result of a successful quota check. count is None for unlimited tiers."""

    count: int | None
    daily_limit: int | None

    @property
    def remaining(self) -> int | None:
        if self.daily_limit is None or self.count is None:
            return None
        return max(0, self.daily_limit - self.count)


class QuotaService:

    @staticmethod
    async def admit(
        db: AsyncSession,
        user_id: int,
        tier: str,
        daily_limit: int | None,
        today: date | None = None,
    ) -> Admission:
        """
        Admit one message for the user or raise QuotaExceeded.

        The counter change is part of the caller's transaction; it becomes
        durable together with whatever the caller commits next.
        """
        if daily_limit is None:
            return Admission(count=None, daily_limit=None)

        if daily_limit <= 0:
            raise QuotaExceeded(daily_limit)

        today = today or utc_today()

        stmt = (
            update(User)
            .where(
                User.id == user_id,
                or_(
                    User.last_message_date.is_(None),
                    User.last_message_date != today,
                    User.daily_message_count < daily_limit,
                ),
            )
            .values(
                daily_message_count=case(
                    (User.last_message_date == today, User.daily_message_count + 1),
                    else_=1,
                ),
                last_message_date=today,
            )
            .returning(User.daily_message_count)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        count = result.scalar_one_or_none()

        if count is None:
            current = await db.execute(
                select(User.daily_message_count).where(User.id == user_id)
            )
            stored = current.scalar_one_or_none()
            if stored is None:
                raise NotFound(f"User {user_id} not found")
            logger.info(
                "Quota exceeded",
                user_id=user_id,
                tier=tier,
                daily_limit=daily_limit,
                count=stored,
            )
            raise QuotaExceeded(daily_limit, count=stored)

        logger.debug("Quota admitted", user_id=user_id, count=count, daily_limit=daily_limit)
        return Admission(count=count, daily_limit=daily_limit)

    @staticmethod
    async def refund(
        db: AsyncSession,
        user_id: int,
        today: date | None = None,
    ) -> bool:
        """
        Give back one slot admitted today. Does nothing once the day has
        rolled over or the counter is already zero.
        """
        today = today or utc_today()
        result = await db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.last_message_date == today,
                User.daily_message_count > 0,
            )
            .values(daily_message_count=User.daily_message_count - 1)
            .execution_options(synchronize_session=False)
        )
        refunded = result.rowcount == 1
        if refunded:
            logger.info("Quota slot refunded", user_id=user_id)
        return refunded
