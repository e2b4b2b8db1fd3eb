"""
schemas/job.py
--------------
Payload carried by the job queue between the accepting request and a
worker. Retry bookkeeping (attempts, lease) lives in the queue, never here.
"""

from pydantic import BaseModel, Field


class MessageJob(BaseModel):
    message_id: int
    chatroom_id: int
    user_id: int
    content: str = Field(..., min_length=1)


class QueueStatus(BaseModel):
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
