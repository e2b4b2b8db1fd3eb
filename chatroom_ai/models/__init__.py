"""
models/__init__.py
------------------
Re-export all models so create_tables.py (and Alembic, later) can import
Base and discover all tables via a single import:

    from chatroom_ai.models import Base
"""

from chatroom_ai.db.base import Base
from chatroom_ai.models.user import SubscriptionTier, User
from chatroom_ai.models.chatroom import Chatroom
from chatroom_ai.models.message import Message, MessageKind, ProcessingStatus

__all__ = [
    "Base",
    "User",
    "SubscriptionTier",
    "Chatroom",
    "Message",
    "MessageKind",
    "ProcessingStatus",
]
