"""
services/llm_service.py
-----------------------
AI completion collaborator.

complete(prompt, history) returns the reply text or raises:
  AITimeout          — the provider did not answer in time   (retryable)
  AIUnavailable      — connection / rate limit / 5xx          (retryable)
  AIRequestRejected  — the provider refused the request       (permanent)

No retry loop in here: retries belong to the worker pool's backoff
policy, which reschedules the job through the queue.

Runs in MOCK mode when OPENAI_API_KEY is empty.
"""

import time
from typing import Protocol

import openai

from chatroom_ai.core.config import Settings
from chatroom_ai.core.exceptions import AIRequestRejected, AITimeout, AIUnavailable
from chatroom_ai.core.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, concise, and helpful responses."
)


class CompletionService(Protocol):
    async def complete(self, prompt: str, history: list[dict[str, str]]) -> str:
        ...


class LLMService:

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._use_mock = not bool(settings.OPENAI_API_KEY)
        if not self._use_mock:
            self._client = openai.AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                max_retries=0,
            )
        else:
            logger.info("LLMService in MOCK mode — set OPENAI_API_KEY for real LLM")

    async def complete(self, prompt: str, history: list[dict[str, str]]) -> str:
        """
        Generate a reply to `prompt` given prior chatroom turns.

        history items are {"role": "user" | "assistant", "content": str},
        oldest first.
        """
        start = time.monotonic()

        if self._use_mock:
            response = await self._mock_complete(prompt, history)
        else:
            response = await self._openai_complete(prompt, history)

        latency_ms = round((time.monotonic() - start) * 1000, 1)
        logger.info(
            "LLM response generated",
            latency_ms=latency_ms,
            history_length=len(history),
            mock=self._use_mock,
        )
        return response

    # ── Mock implementation ───────────────────────────────────────────────────

    async def _mock_complete(self, prompt: str, history: list[dict[str, str]]) -> str:
        return (
            f"[MOCK LLM RESPONSE]\n\n"
            f"You asked: '{prompt[:100]}{'...' if len(prompt) > 100 else ''}'\n\n"
            f"({len(history)} earlier messages in this chatroom.) "
            "Set OPENAI_API_KEY in .env to use a real LLM."
        )

    # ── OpenAI implementation ─────────────────────────────────────────────────

    async def _openai_complete(self, prompt: str, history: list[dict[str, str]]) -> str:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend(history)
        messages.append({"role": "user", "content": prompt})

        try:
            completion = await self._client.chat.completions.create(
                model=self._settings.LLM_MODEL,
                messages=messages,
                max_tokens=self._settings.LLM_MAX_TOKENS,
                temperature=self._settings.LLM_TEMPERATURE,
                timeout=self._settings.AI_TIMEOUT_SECONDS,
            )
        except openai.APITimeoutError as exc:
            logger.warning("OpenAI request timed out", error=str(exc))
            raise AITimeout("AI completion timed out") from exc
        except (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as exc:
            logger.warning("OpenAI unavailable", error=str(exc))
            raise AIUnavailable(f"AI service unavailable: {exc}") from exc
        except openai.APIStatusError as exc:
            logger.error("OpenAI rejected request", status=exc.status_code, error=str(exc))
            raise AIRequestRejected(f"AI service rejected request: {exc}") from exc

        return completion.choices[0].message.content or ""
