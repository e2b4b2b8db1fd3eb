"""
models/chatroom.py
------------------
Chatroom ORM model.

A chatroom belongs to exactly one user. Every query that reads a chatroom
or its messages MUST filter on user_id; ownership is the only
authorisation rule in this service.
"""

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatroom_ai.db.base import Base, TimestampMixin


class Chatroom(Base, TimestampMixin):
    __tablename__ = "chatrooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="chatrooms")  # noqa: F821
    messages: Mapped[list["Message"]] = relationship(  # noqa: F821
        "Message",
        back_populates="chatroom",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.id",
    )

    def __repr__(self) -> str:
        return f"<Chatroom id={self.id} user_id={self.user_id}>"
