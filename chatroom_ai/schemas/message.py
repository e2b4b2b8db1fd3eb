"""
schemas/message.py
------------------
Pydantic models for message submission and status polling.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    content: str = Field(
        ...,
        min_length=1,
        max_length=10000,
        examples=["What are the main benefits of async programming?"],
        description="User message sent into the chatroom",
    )


class MessageRead(BaseModel):
    id: int
    content: str
    kind: str
    processing_status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageAccepted(BaseModel):
    success: bool = True
    accepted: bool = True
    message: MessageRead
    queue_status: str = "queued"


class MessageStatus(BaseModel):
    id: int
    chatroom_id: int
    chatroom_name: str
    content: str
    kind: str
    processing_status: str
    created_at: datetime
    reply: Optional[str] = None


class MessageStatusResponse(BaseModel):
    success: bool = True
    message: MessageStatus
