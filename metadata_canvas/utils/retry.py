"""Retry policy with exponential backoff and jitter for async calls."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from metadata_canvas.utils.config import RetryConfig
from metadata_canvas.utils.errors import GatewayError

T = TypeVar("T")


def is_transient_error(exc: BaseException, retriable_status_codes: frozenset[int]) -> bool:
    """Transient = retriable status code, or a network/timeout failure."""
    if isinstance(exc, GatewayError):
        if exc.status_code is not None:
            return exc.status_code in retriable_status_codes
        return exc.retriable
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


class RetryPolicy(BaseModel):
    """Backoff parameters plus the retriable-condition predicate."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0)
    retriable_status_codes: frozenset[int] = frozenset({402, 429, 500, 502, 503, 504})

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            jitter=config.jitter,
            retriable_status_codes=frozenset(config.retriable_status_codes),
        )

    def should_retry(self, exc: BaseException) -> bool:
        return is_transient_error(exc, self.retriable_status_codes)

    def delay_for(self, attempt: int, *, rand: Callable[[], float] = random.random) -> float:
        """Backoff in seconds before retry number ``attempt`` (0-based).

        ``rand`` returns a value in [0, 1); the delay varies by +-``jitter``.
        """
        base = self.base_delay * (self.multiplier**attempt)
        offset = base * self.jitter * (2.0 * rand() - 1.0)
        return max(0.0, base + offset)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    rand: Callable[[], float] = random.random,
    operation: str = "llm call",
) -> T:
    """Await ``fn()`` retrying transient failures according to ``policy``.

    Non-retriable errors propagate immediately. After the last attempt the original
    exception is re-raised.
    """

    def _wait(retry_state: RetryCallState) -> float:
        return policy.delay_for(retry_state.attempt_number - 1, rand=rand)

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "{} failed (attempt {}/{}), retrying in {:.2f}s: {}",
            operation,
            retry_state.attempt_number,
            policy.max_retries + 1,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            exc,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=_wait,
        retry=retry_if_exception(policy.should_retry),
        before_sleep=_before_sleep,
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )
    return await retrying(fn)
