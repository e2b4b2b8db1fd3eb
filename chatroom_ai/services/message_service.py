"""
services/message_service.py
---------------------------
Accepting user messages and reporting their processing status.

Accept path (synchronous part of the pipeline):
  1. chatroom ownership check                      → NotFound
  2. quota admission (atomic conditional UPDATE)   → QuotaExceeded
  3. insert 'pending' message, COMMIT
  4. enqueue job (hard timeout)                    → QueueUnavailable
  5. invalidate the owner's chatroom listing

The commit in step 3 happens before the enqueue so a worker can never
claim a job whose message row is not yet visible. If the enqueue fails
the message is moved to 'failed' and the quota slot is given back.

Once the job is enqueued, failures are only observable through
get_message_status().
"""

from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatroom_ai.core.exceptions import NotFound, QueueUnavailable
from chatroom_ai.core.logging import get_logger
from chatroom_ai.models.chatroom import Chatroom
from chatroom_ai.models.message import Message, MessageKind, ProcessingStatus
from chatroom_ai.models.user import User
from chatroom_ai.queue.job_queue import RedisJobQueue
from chatroom_ai.schemas.job import MessageJob
from chatroom_ai.schemas.message import MessageStatus
from chatroom_ai.services.cache_service import ChatroomCache
from chatroom_ai.services.chatroom_service import ChatroomService
from chatroom_ai.services.message_store import MessageStore
from chatroom_ai.services.quota_service import Admission, QuotaService
from chatroom_ai.services.subscription_service import daily_limit_for

logger = get_logger(__name__)


class MessageService:

    @staticmethod
    async def send_message(
        db: AsyncSession,
        queue: RedisJobQueue,
        cache: ChatroomCache,
        user: User,
        chatroom_id: int,
        content: str,
        basic_limit: int | None = None,
        today: date | None = None,
    ) -> tuple[Message, Admission]:
        user_id = user.id
        tier = user.subscription_tier

        chatroom = await ChatroomService.get_owned_chatroom(db, chatroom_id, user_id)

        admission = await QuotaService.admit(
            db,
            user_id=user_id,
            tier=tier,
            daily_limit=daily_limit_for(tier, basic_limit),
            today=today,
        )

        message = Message(
            chatroom_id=chatroom.id,
            user_id=user_id,
            content=content,
            kind=MessageKind.user.value,
            processing_status=ProcessingStatus.pending.value,
        )
        db.add(message)
        await db.flush()
        await db.refresh(message)
        await db.commit()

        job = MessageJob(
            message_id=message.id,
            chatroom_id=chatroom.id,
            user_id=user_id,
            content=content,
        )
        try:
            job_id = await queue.enqueue(job.model_dump_json())
        except QueueUnavailable:
            await MessageStore.mark_failed(db, message.id)
            if admission.count is not None:
                await QuotaService.refund(db, user_id, today)
            await db.commit()
            await cache.invalidate(user_id)
            logger.error(
                "Message rejected, queue unavailable",
                message_id=message.id,
                user_id=user_id,
            )
            raise

        await cache.invalidate(user_id)

        logger.info(
            "Message accepted",
            message_id=message.id,
            chatroom_id=chatroom.id,
            user_id=user_id,
            job_id=job_id,
            quota_count=admission.count,
        )
        return message, admission

    @staticmethod
    async def get_message_status(
        db: AsyncSession,
        message_id: int,
        user_id: int,
    ) -> MessageStatus:
        """
        Current status of a message in one of the requester's chatrooms.
        Messages in other users' chatrooms are reported exactly like
        missing ones. Never cached.
        """
        result = await db.execute(
            select(Message, Chatroom.name)
            .join(Chatroom, Message.chatroom_id == Chatroom.id)
            .where(Message.id == message_id, Chatroom.user_id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFound("Message not found")

        message, chatroom_name = row
        reply = None
        if (
            message.kind == MessageKind.user.value
            and message.processing_status == ProcessingStatus.completed.value
        ):
            ai_message = await MessageStore.get_reply(db, message.id)
            reply = ai_message.content if ai_message is not None else None

        return MessageStatus(
            id=message.id,
            chatroom_id=message.chatroom_id,
            chatroom_name=chatroom_name,
            content=message.content,
            kind=message.kind,
            processing_status=message.processing_status,
            created_at=message.created_at,
            reply=reply,
        )
