"""
services/cache_service.py
-------------------------
Read-through cache for chatroom listings, keyed by owning user.

Consistency rule:
  Every mutation of a user's chatrooms or of a chatroom's messages calls
  invalidate() after its transaction commits and before it reports
  success. Reads and writes fail open (a broken cache is just a miss);
  invalidate() does not, because a silently skipped invalidation would
  leave a stale listing visible for the whole TTL.
"""

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from chatroom_ai.core.exceptions import CacheUnavailable
from chatroom_ai.core.logging import get_logger
from chatroom_ai.schemas.chatroom import ChatroomSummary, ChatroomSummaryList

logger = get_logger(__name__)


class ChatroomCache:

    def __init__(self, client: "redis.Redis", default_ttl: int = 600) -> None:
        self._redis = client
        self._default_ttl = default_ttl

    @staticmethod
    def key(user_id: int) -> str:
        return f"chatrooms:{user_id}"

    async def get(self, user_id: int) -> list[ChatroomSummary] | None:
        try:
            raw = await self._redis.get(self.key(user_id))
        except RedisError as exc:
            logger.warning("Chatroom cache read failed", user_id=user_id, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return ChatroomSummaryList.validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable chatroom cache entry", user_id=user_id)
            return None

    async def set(
        self,
        user_id: int,
        rooms: list[ChatroomSummary],
        ttl: int | None = None,
    ) -> None:
        payload = ChatroomSummaryList.dump_json(rooms)
        try:
            await self._redis.set(self.key(user_id), payload, ex=ttl or self._default_ttl)
        except RedisError as exc:
            logger.warning("Chatroom cache write failed", user_id=user_id, error=str(exc))

    async def invalidate(self, user_id: int) -> None:
        try:
            await self._redis.delete(self.key(user_id))
        except RedisError as exc:
            logger.error("Chatroom cache invalidation failed", user_id=user_id, error=str(exc))
            raise CacheUnavailable("Could not invalidate chatroom cache") from exc
