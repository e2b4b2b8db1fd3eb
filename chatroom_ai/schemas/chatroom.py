"""
schemas/chatroom.py
-------------------
Pydantic request/response models for Chatroom.

ChatroomSummary is also the shape stored in the Redis listing cache, so it
must round-trip through JSON without losing information.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from chatroom_ai.schemas.message import MessageRead


class ChatroomCreate(BaseModel):
    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        examples=["Trip planning"],
    )
    description: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class ChatroomRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ChatroomSummary(ChatroomRead):
    message_count: int = 0
    last_message_at: Optional[datetime] = None


class ChatroomListResponse(BaseModel):
    success: bool = True
    chatrooms: list[ChatroomSummary]
    cached: bool


class ChatroomDetailResponse(BaseModel):
    success: bool = True
    chatroom: ChatroomRead
    messages: list[MessageRead]


ChatroomSummaryList = TypeAdapter(list[ChatroomSummary])
