"""Bounded timeout + exponential backoff for calls that cross a process boundary.

Embedding and extraction/summarization providers are the only suspension
points that leave the process. Every such call goes through call_with_retry so
callers receive DependencyError instead of blocking indefinitely.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from openai import APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from src.infra.errors import DependencyError, ValidationError

logger = structlog.get_logger()

T = TypeVar("T")

_RETRYABLE: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    DependencyError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and retry budget for one provider call."""

    timeout_s: float = 10.0
    max_retries: int = 2
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0

    @classmethod
    def from_settings(cls, settings: Any) -> RetryPolicy:
        return cls(
            timeout_s=settings.timeout_s,
            max_retries=settings.max_retries,
            base_delay_s=settings.base_delay_s,
            max_delay_s=settings.max_delay_s,
        )


async def call_with_retry(
    coro_factory: Callable[[], Coroutine[Any, Any, T]],
    policy: RetryPolicy,
    *,
    context: str = "",
) -> T:
    """Execute an async provider call with timeout and exponential backoff retry.

    Retries on: timeouts, connection errors, OpenAI connection/timeout/rate-limit
    errors, and DependencyError raised by a provider adapter.
    Other failures (e.g. non-retryable API status errors, malformed provider
    output) are wrapped in DependencyError immediately. ValidationError
    propagates untouched.
    """
    for attempt in range(policy.max_retries + 1):
        try:
            return await asyncio.wait_for(coro_factory(), timeout=policy.timeout_s)
        except ValidationError:
            raise
        except _RETRYABLE as e:
            if attempt == policy.max_retries:
                logger.warning(
                    "provider_call_exhausted",
                    attempts=attempt + 1,
                    error=str(e) or type(e).__name__,
                    context=context,
                )
                raise DependencyError(
                    f"{context or 'provider call'} failed after "
                    f"{policy.max_retries + 1} attempts: {e or type(e).__name__}"
                ) from e
            delay = min(
                policy.base_delay_s * (2**attempt) + random.uniform(0, policy.base_delay_s / 2),
                policy.max_delay_s,
            )
            logger.warning(
                "provider_retry",
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay=round(delay, 2),
                error=str(e) or type(e).__name__,
                context=context,
            )
            await asyncio.sleep(delay)
        except APIStatusError as e:
            raise DependencyError(
                f"{context or 'provider call'} rejected: {e.status_code} {e.message}"
            ) from e
        except Exception as e:
            raise DependencyError(f"{context or 'provider call'} failed: {e}") from e
    # Unreachable, but satisfies type checker
    raise DependencyError("Retry loop exhausted")  # pragma: no cover
