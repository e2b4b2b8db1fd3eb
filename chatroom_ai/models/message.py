"""
models/message.py
-----------------
Message record: one unit of chat content, human or AI-authored.

processing_status is the single source of truth for a job's outcome:

    pending → processing → completed
                         ↘ failed

AI replies are inserted already 'completed' and point at the user message
they answer through reply_to_id. The unique constraint on reply_to_id is
what keeps a redelivered job from producing a second reply.
"""

from enum import Enum as PyEnum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatroom_ai.db.base import Base, TimestampMixin


class MessageKind(str, PyEnum):
    user = "user"
    ai = "ai"


class ProcessingStatus(str, PyEnum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class Message(Base, TimestampMixin):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chatroom_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chatrooms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reply_to_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageKind.user.value
    )
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingStatus.pending.value, index=True
    )

    # Relationships
    chatroom: Mapped["Chatroom"] = relationship("Chatroom", back_populates="messages")  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Message id={self.id} kind={self.kind} "
            f"status={self.processing_status}>"
        )
