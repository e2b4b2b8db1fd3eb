"""
services/message_store.py
-------------------------
Status transitions and reads on the messages table used by the worker.

Every transition is a conditional UPDATE on the current status, so a
terminal message can never be moved again, whatever order redelivered
jobs arrive in. Methods flush but never commit; the caller owns the
transaction boundary.
"""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatroom_ai.core.logging import get_logger
from chatroom_ai.models.message import Message, MessageKind, ProcessingStatus

logger = get_logger(__name__)

_OPEN_STATUSES = (ProcessingStatus.pending.value, ProcessingStatus.processing.value)


class MessageStore:

    @staticmethod
    async def mark_processing(db: AsyncSession, message_id: int) -> bool:
        """
        pending/processing → processing.
        False when the message is gone or already terminal.
        """
        result = await db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.kind == MessageKind.user.value,
                Message.processing_status.in_(_OPEN_STATUSES),
            )
            .values(processing_status=ProcessingStatus.processing.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def complete_with_reply(
        db: AsyncSession,
        message_id: int,
        chatroom_id: int,
        user_id: int,
        reply: str,
    ) -> Message | None:
        """
        processing → completed, inserting the AI reply in the same transaction.

        Returns the reply row, or None if the message was no longer
        processing or a reply already exists (another delivery won). In
        the None case the transaction has been rolled back.
        """
        flipped = await db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.processing_status == ProcessingStatus.processing.value,
            )
            .values(processing_status=ProcessingStatus.completed.value)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            await db.rollback()
            return None

        ai_message = Message(
            chatroom_id=chatroom_id,
            user_id=user_id,
            reply_to_id=message_id,
            content=reply,
            kind=MessageKind.ai.value,
            processing_status=ProcessingStatus.completed.value,
        )
        db.add(ai_message)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.warning("AI reply already stored", message_id=message_id)
            return None
        return ai_message

    @staticmethod
    async def mark_failed(db: AsyncSession, message_id: int) -> bool:
        """pending/processing → failed. False if already terminal or missing."""
        result = await db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.processing_status.in_(_OPEN_STATUSES),
            )
            .values(processing_status=ProcessingStatus.failed.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def get(db: AsyncSession, message_id: int) -> Message | None:
        result = await db.execute(select(Message).where(Message.id == message_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_reply(db: AsyncSession, message_id: int) -> Message | None:
        result = await db.execute(
            select(Message).where(
                Message.reply_to_id == message_id,
                Message.kind == MessageKind.ai.value,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def recent_history(
        db: AsyncSession,
        chatroom_id: int,
        before_id: int,
        limit: int = 10,
    ) -> list[Message]:
        """The `limit` messages preceding `before_id` in a chatroom, oldest first."""
        result = await db.execute(
            select(Message)
            .where(Message.chatroom_id == chatroom_id, Message.id < before_id)
            .order_by(Message.id.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))

    @staticmethod
    async def find_stuck(db: AsyncSession, older_than: datetime) -> list[Message]:
        """Open messages (pending or processing) whose status has not moved since `older_than`."""
        result = await db.execute(
            select(Message)
            .where(
                Message.processing_status.in_(_OPEN_STATUSES),
                Message.updated_at < older_than,
            )
            .order_by(Message.id)
        )
        return list(result.scalars().all())
