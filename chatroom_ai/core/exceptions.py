"""
core/exceptions.py
------------------
Domain exception hierarchy.

Services raise these; they never build HTTP responses themselves.
Each exception carries the status code and error code the API layer
renders, so a single handler in main.py covers every route.

Categories:
  - User errors        → reported synchronously, never retried
  - Transient errors   → retried by the worker's backoff policy
  - Permanent errors   → fail the job at once, no retry budget consumed
"""

from typing import Any


class ChatroomError(Exception):
    """Base exception for all chatroom pipeline errors."""

    error_code: str = "CHATROOM_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if status_code:
            self.status_code = status_code
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }


# ── User errors ───────────────────────────────────────────────────────────────

class NotFound(ChatroomError):
    """Resource does not exist or is not owned by the requester."""
    error_code = "NOT_FOUND"
    status_code = 404


class QuotaExceeded(ChatroomError):
    """Daily message quota for the user's tier is used up."""
    error_code = "QUOTA_EXCEEDED"
    status_code = 429

    def __init__(self, daily_limit: int, count: int | None = None):
        super().__init__(
            f"Daily message limit of {daily_limit} reached. "
            "Upgrade to Pro for unlimited messages.",
            context={"daily_limit": daily_limit, "count": count},
        )
        self.daily_limit = daily_limit
        self.count = count


# ── Transient infrastructure errors ───────────────────────────────────────────

class QueueUnavailable(ChatroomError):
    """Broker unreachable or saturated beyond the enqueue timeout."""
    error_code = "QUEUE_UNAVAILABLE"
    status_code = 503


class CacheUnavailable(ChatroomError):
    error_code = "CACHE_UNAVAILABLE"
    status_code = 503


class AIServiceError(ChatroomError):
    """Base for failures of the AI completion collaborator."""
    error_code = "AI_SERVICE_ERROR"
    status_code = 502
    retryable: bool = True


class AIUnavailable(AIServiceError):
    error_code = "AI_UNAVAILABLE"


class AITimeout(AIServiceError):
    error_code = "AI_TIMEOUT"


# ── Permanent job errors ──────────────────────────────────────────────────────

class AIRequestRejected(AIServiceError):
    """The AI service refused the request; retrying will not help."""
    error_code = "AI_REQUEST_REJECTED"
    retryable = False
