"""
services/subscription_service.py
--------------------------------
Tier → daily message limit lookup.

This service only reads subscription state; it never mutates it.
"""

from chatroom_ai.core.config import settings
from chatroom_ai.models.user import SubscriptionTier


def daily_limit_for(tier: str, basic_limit: int | None = None) -> int | None:
    """
    Return the daily message limit for a tier, or None for unlimited.
    Unknown tiers are treated as basic.
    """
    if tier == SubscriptionTier.pro.value:
        return None
    if basic_limit is None:
        basic_limit = settings.BASIC_DAILY_MESSAGE_LIMIT
    return basic_limit
