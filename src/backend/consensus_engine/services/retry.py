"""
Rate-limit retry policy for backend calls.

Only errors that signal provider-side rate limiting (HTTP 429, "resource
exhausted", quota) are retried, with exponential backoff plus jitter. Every
other error propagates on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import openai
from google.genai import errors as genai_errors

from consensus_engine.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_KEYWORDS = (
    "429",
    "resource exhausted",
    "resource_exhausted",
    "quota",
    "rate limit",
    "rate_limit",
    "too many requests",
)


class RateLimitExhaustedError(RuntimeError):
    """Raised when a rate-limited call still fails after the last attempt."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Rate limit persisted after {attempts} attempts: {last_error}"
        )


def is_rate_limit_error(error: BaseException) -> bool:
    """
    True if the error is the backend asking us to slow down.

    Only transport errors (openai / google-genai API errors, or anything
    carrying a 429 status) qualify. Keywords are matched against the
    message of those errors only, never against parse or validation errors
    whose text may echo model output.
    """
    if isinstance(error, openai.RateLimitError):
        return True
    status = getattr(error, "status_code", None) or getattr(error, "code", None)
    if status == 429:
        return True
    if isinstance(error, genai_errors.APIError) and str(error.status or "").upper() == "RESOURCE_EXHAUSTED":
        return True
    if not isinstance(error, (openai.APIError, genai_errors.APIError)):
        return False
    error_str = str(error).lower()
    return any(keyword in error_str for keyword in RATE_LIMIT_KEYWORDS)


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff for rate-limited calls.

    The wait after failed attempt k (0-based) is ``base_delay * 2**k`` plus a
    jitter drawn from ``[0, min(max_jitter, base_delay))``. Capping the jitter
    below ``base_delay`` keeps successive waits strictly increasing.
    """
    max_attempts: int = field(default_factory=lambda: settings.rate_limit_max_attempts)
    base_delay: float = field(default_factory=lambda: settings.rate_limit_base_delay)
    max_jitter: float = field(default_factory=lambda: settings.rate_limit_max_jitter)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    def delay_for(self, attempt: int) -> float:
        jitter_cap = min(self.max_jitter, self.base_delay)
        jitter = self.rng.uniform(0, jitter_cap) if jitter_cap > 0 else 0.0
        # uniform() may return the upper bound; keep the jitter strictly below it
        if jitter_cap > 0 and jitter >= jitter_cap:
            jitter = jitter_cap * 0.999
        return self.base_delay * (2 ** attempt) + jitter

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        label: str = "",
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> T:
        """
        Call ``fn`` until it succeeds, retrying only on rate-limit errors.

        Args:
            fn: Zero-argument coroutine factory; called once per attempt
            label: Name used in log lines
            on_attempt: Optional hook called with the 1-based attempt number

        Raises:
            RateLimitExhaustedError: rate limited on every attempt
            Exception: any non-rate-limit error, unchanged
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            if on_attempt:
                on_attempt(attempt + 1)
            try:
                return await fn()
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise
                last_error = e
                if attempt == self.max_attempts - 1:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"[{label}] rate limited (attempt {attempt + 1}/{self.max_attempts}): "
                    f"{e}. Retrying in {delay:.1f}s..."
                )
                await self.sleep(delay)

        logger.error(f"[{label}] rate limit persisted after {self.max_attempts} attempts")
        raise RateLimitExhaustedError(self.max_attempts, last_error)
