"""
Retry and backoff for calls to the analysis service

Implements:
1. Retry Policy - bounded attempts with exponential delay
2. Rate-limit aware backoff - a raised floor when the service pushes back
3. Retry statistics - counters for diagnostics

A single policy is shared by chunk calls and per-image fallback calls.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from .errors import MalformedResponseError, RateLimitError, TransientError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientError, MalformedResponseError)

_RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "ratelimit",
                       "too many requests", "quota", "429")


@dataclass
class RetryPolicy:
    """Configuration for retry with exponential backoff"""
    max_attempts: int = 3                 # Total attempts including the first
    base_delay: float = 2.0               # Seconds before the first retry
    backoff_factor: float = 2.0           # Growth per attempt
    max_delay: float = 30.0               # Cap on any single wait
    rate_limit_min_delay: float = 10.0    # Floor after a rate-limit error

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.retry_attempts)),
            base_delay=float(config.retry_base_delay),
            backoff_factor=float(config.retry_backoff_factor),
            max_delay=float(config.retry_max_delay),
            rate_limit_min_delay=float(config.rate_limit_min_delay),
        )

    def compute_delay(self, attempt: int, rate_limited: bool = False) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)"""
        delay = self.base_delay * (self.backoff_factor ** max(0, attempt - 1))
        if rate_limited:
            delay = max(self.rate_limit_min_delay, delay * 2)
        return min(self.max_delay, delay)


class RetryStats:
    """Counters shared by every retry wrapper in one pipeline run"""

    def __init__(self):
        self.attempts = 0
        self.retries = 0
        self.rate_limit_hits = 0
        self.exhausted = 0

    def get_stats(self) -> dict:
        return {
            'attempts': self.attempts,
            'retries': self.retries,
            'rate_limit_hits': self.rate_limit_hits,
            'exhausted': self.exhausted,
        }


def is_rate_limit_error(exc: BaseException) -> bool:
    """Recognize rate-limit failures by type, HTTP status or message"""
    if isinstance(exc, RateLimitError):
        return True
    if getattr(exc, 'status', None) == 429 or getattr(exc, 'status_code', None) == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "request",
    stats: Optional[RetryStats] = None,
) -> Any:
    """
    Run ``operation`` until it succeeds or ``policy.max_attempts`` is reached.

    Only TransientError and MalformedResponseError are retried; anything else
    propagates immediately. When attempts run out the last error is re-raised
    unchanged.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        if stats:
            stats.attempts += 1
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            rate_limited = is_rate_limit_error(e)
            if rate_limited and stats:
                stats.rate_limit_hits += 1

            if attempt >= attempts:
                if stats:
                    stats.exhausted += 1
                logger.error(
                    "Maximum retries (%d) reached for %s. Giving up: %s",
                    attempts, label, repr(e))
                raise

            delay = policy.compute_delay(attempt, rate_limited=rate_limited)
            logger.warning(
                "Retry %d/%d for %s after %.1fs%s due to error: %s",
                attempt, attempts - 1, label, delay,
                " (rate limited)" if rate_limited else "", repr(e))
            if stats:
                stats.retries += 1
            await sleep(delay)
