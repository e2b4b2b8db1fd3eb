"""
api/routes/chatrooms.py
-----------------------
Chatroom and messaging endpoints.

POST   /api/chatroom                               — Create a chatroom
GET    /api/chatroom                               — List chatrooms (cached)
GET    /api/chatroom/{id}                          — Chatroom with its messages
DELETE /api/chatroom/{id}                          — Delete chatroom + messages
POST   /api/chatroom/{id}/message                  — Accept a message (202)
GET    /api/chatroom/message/{message_id}/status   — Poll processing status
GET    /api/chatroom/queue/status                  — Job queue counters

Domain errors (NotFound, QuotaExceeded, QueueUnavailable, ...) propagate to
the ChatroomError handler registered in main.py.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatroom_ai.core.context import AppContext
from chatroom_ai.db.session import get_db
from chatroom_ai.dependencies import get_context, get_current_user, rate_limit
from chatroom_ai.models.user import User
from chatroom_ai.schemas.chatroom import (
    ChatroomCreate,
    ChatroomDetailResponse,
    ChatroomListResponse,
    ChatroomRead,
)
from chatroom_ai.schemas.job import QueueStatus
from chatroom_ai.schemas.message import (
    MessageAccepted,
    MessageCreate,
    MessageRead,
    MessageStatusResponse,
)
from chatroom_ai.services.chatroom_service import ChatroomService
from chatroom_ai.services.message_service import MessageService

router = APIRouter(
    prefix="/api/chatroom",
    tags=["Chatrooms"],
    dependencies=[Depends(rate_limit)],
)


@router.post(
    "",
    response_model=ChatroomRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a chatroom",
)
async def create_chatroom(
    body: ChatroomCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AppContext, Depends(get_context)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> ChatroomRead:
    chatroom = await ChatroomService.create_chatroom(db, context.cache, current_user.id, body)
    return ChatroomRead.model_validate(chatroom)


@router.get(
    "",
    response_model=ChatroomListResponse,
    summary="List the current user's chatrooms",
)
async def list_chatrooms(
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AppContext, Depends(get_context)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> ChatroomListResponse:
    """Served from a 10-minute cache that every chatroom mutation invalidates."""
    rooms, cached = await ChatroomService.list_chatrooms(db, context.cache, current_user.id)
    return ChatroomListResponse(chatrooms=rooms, cached=cached)


@router.get(
    "/queue/status",
    response_model=QueueStatus,
    summary="Message processing queue counters",
)
async def queue_status(
    context: Annotated[AppContext, Depends(get_context)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> QueueStatus:
    return await context.queue.status()


@router.get(
    "/message/{message_id}/status",
    response_model=MessageStatusResponse,
    summary="Poll the processing status of a message",
)
async def get_message_status(
    message_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> MessageStatusResponse:
    """
    Returns the current processing status. Once the status is 'completed'
    the AI reply is included. Never cached.
    """
    message = await MessageService.get_message_status(db, message_id, current_user.id)
    return MessageStatusResponse(message=message)


@router.get(
    "/{chatroom_id}",
    response_model=ChatroomDetailResponse,
    summary="Get a chatroom with its messages",
)
async def get_chatroom(
    chatroom_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> ChatroomDetailResponse:
    chatroom, messages = await ChatroomService.get_chatroom_with_messages(
        db, chatroom_id, current_user.id
    )
    return ChatroomDetailResponse(
        chatroom=ChatroomRead.model_validate(chatroom),
        messages=[MessageRead.model_validate(m) for m in messages],
    )


@router.delete(
    "/{chatroom_id}",
    summary="Delete a chatroom and all of its messages",
)
async def delete_chatroom(
    chatroom_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AppContext, Depends(get_context)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> dict:
    await ChatroomService.delete_chatroom(db, context.cache, chatroom_id, current_user.id)
    return {"success": True, "message": "Chatroom deleted successfully"}


@router.post(
    "/{chatroom_id}/message",
    response_model=MessageAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a message; the AI reply is generated asynchronously",
)
async def send_message(
    chatroom_id: int,
    body: MessageCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[AppContext, Depends(get_context)],
    current_user: Annotated[User, Depends(get_current_user)],
) -> MessageAccepted:
    """
    Accepts the message and queues it for the AI worker.
    Poll GET /api/chatroom/message/{id}/status for the outcome.

    429 when the daily quota of a basic-tier user is used up.
    503 when the job queue cannot take the message.
    """
    message, _ = await MessageService.send_message(
        db,
        context.queue,
        context.cache,
        current_user,
        chatroom_id,
        body.content,
        basic_limit=context.settings.BASIC_DAILY_MESSAGE_LIMIT,
    )
    return MessageAccepted(message=MessageRead.model_validate(message))
