"""
services/chatroom_service.py
----------------------------
Business logic for chatroom CRUD and the cached chatroom listing.

Ordering rule for mutations:
  commit → invalidate cache → return.
  Invalidating before the commit would let a concurrent reader re-cache
  the pre-mutation listing.
"""

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatroom_ai.core.exceptions import NotFound
from chatroom_ai.core.logging import get_logger
from chatroom_ai.models.chatroom import Chatroom
from chatroom_ai.models.message import Message
from chatroom_ai.schemas.chatroom import ChatroomCreate, ChatroomSummary
from chatroom_ai.services.cache_service import ChatroomCache

logger = get_logger(__name__)


class ChatroomService:

    @staticmethod
    async def create_chatroom(
        db: AsyncSession,
        cache: ChatroomCache,
        user_id: int,
        data: ChatroomCreate,
    ) -> Chatroom:
        chatroom = Chatroom(user_id=user_id, name=data.name, description=data.description)
        db.add(chatroom)
        await db.flush()
        await db.refresh(chatroom)
        await db.commit()
        await cache.invalidate(user_id)

        logger.info("Chatroom created", chatroom_id=chatroom.id, user_id=user_id)
        return chatroom

    @staticmethod
    async def list_chatrooms(
        db: AsyncSession,
        cache: ChatroomCache,
        user_id: int,
    ) -> tuple[list[ChatroomSummary], bool]:
        """
        Read-through listing of the user's chatrooms, newest first.

        Returns:
            (chatrooms, served_from_cache)
        """
        cached = await cache.get(user_id)
        if cached is not None:
            return cached, True

        result = await db.execute(
            select(
                Chatroom.id,
                Chatroom.name,
                Chatroom.description,
                Chatroom.created_at,
                func.count(Message.id).label("message_count"),
                func.max(Message.created_at).label("last_message_at"),
            )
            .outerjoin(Message, Message.chatroom_id == Chatroom.id)
            .where(Chatroom.user_id == user_id)
            .group_by(
                Chatroom.id,
                Chatroom.name,
                Chatroom.description,
                Chatroom.created_at,
            )
            .order_by(Chatroom.created_at.desc(), Chatroom.id.desc())
        )
        rooms = [ChatroomSummary.model_validate(row._mapping) for row in result]

        await cache.set(user_id, rooms)
        return rooms, False

    @staticmethod
    async def get_owned_chatroom(
        db: AsyncSession,
        chatroom_id: int,
        user_id: int,
    ) -> Chatroom:
        """Raise NotFound for missing chatrooms and for other users' chatrooms alike."""
        result = await db.execute(
            select(Chatroom).where(Chatroom.id == chatroom_id, Chatroom.user_id == user_id)
        )
        chatroom = result.scalar_one_or_none()
        if chatroom is None:
            raise NotFound("Chatroom not found")
        return chatroom

    @staticmethod
    async def get_chatroom_with_messages(
        db: AsyncSession,
        chatroom_id: int,
        user_id: int,
    ) -> tuple[Chatroom, list[Message]]:
        chatroom = await ChatroomService.get_owned_chatroom(db, chatroom_id, user_id)
        result = await db.execute(
            select(Message)
            .where(Message.chatroom_id == chatroom.id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        return chatroom, list(result.scalars().all())

    @staticmethod
    async def delete_chatroom(
        db: AsyncSession,
        cache: ChatroomCache,
        chatroom_id: int,
        user_id: int,
    ) -> None:
        """Delete a chatroom together with all of its messages."""
        chatroom = await ChatroomService.get_owned_chatroom(db, chatroom_id, user_id)
        # One statement, so AI replies and the messages they answer go together
        await db.execute(delete(Message).where(Message.chatroom_id == chatroom.id))
        await db.delete(chatroom)
        await db.flush()
        await db.commit()
        await cache.invalidate(user_id)

        logger.info("Chatroom deleted", chatroom_id=chatroom_id, user_id=user_id)
