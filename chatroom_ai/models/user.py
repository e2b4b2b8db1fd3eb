"""
models/user.py
--------------
User ORM model with subscription tier and daily quota counter.

Quota design:
  - daily_message_count / last_message_date form the per-user counter.
  - They are only ever changed by a single conditional UPDATE in
    QuotaService, never by read-modify-write in Python.
  - Pro users never touch the counter.
"""

from datetime import date
from enum import Enum as PyEnum

from sqlalchemy import Date, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatroom_ai.db.base import Base, TimestampMixin


class SubscriptionTier(str, PyEnum):
    basic = "basic"
    pro = "pro"


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mobile_number: Mapped[str] = mapped_column(
        String(15), unique=True, nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_tier: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionTier.basic.value
    )
    daily_message_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_message_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Relationships
    chatrooms: Mapped[list["Chatroom"]] = relationship(  # noqa: F821
        "Chatroom", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} tier={self.subscription_tier}>"
