from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from authsync.logging import get_logger

logger = get_logger(__name__)

# 3 attempts sleep 500ms then 1s; nothing after the last attempt
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 500
DEFAULT_BACKOFF_FACTOR = 2.0


class RetryExhausted(Exception):
    """All attempts of a RetryPolicy failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        reason = str(last_error) if last_error else "no usable result"
        super().__init__(f"gave up after {attempts} attempts: {reason}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    The delay after failed attempt ``n`` (1-based) is
    ``base_delay * factor ** (n - 1)``, capped at ``max_delay``. With
    ``jitter`` the delay is drawn uniformly from ``[delay / 2, delay]``.
    No sleep happens after the final attempt.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_MS / 1000.0
    factor: float = DEFAULT_BACKOFF_FACTOR
    jitter: bool = False
    max_delay: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.factor < 1:
            raise ValueError("base_delay must be >= 0 and factor >= 1")

    @classmethod
    def from_ms(
        cls,
        max_attempts: int,
        base_delay_ms: float,
        factor: float = DEFAULT_BACKOFF_FACTOR,
        *,
        jitter: bool = False,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            base_delay=base_delay_ms / 1000.0,
            factor=factor,
            jitter=jitter,
        )

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (self.factor ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay

    def schedule(self) -> list[float]:
        """Nominal sleeps between attempts (without jitter)."""
        nominal = RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            factor=self.factor,
            max_delay=self.max_delay,
        )
        return [nominal.delay_for(n) for n in range(1, self.max_attempts)]

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        retry_if_result: Optional[Callable[[Any], bool]] = None,
        on_retry: Optional[Callable[[int, float, Optional[BaseException]], None]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> Any:
        """Run ``operation`` until it succeeds or attempts run out.

        Exceptions outside ``retry_on`` propagate immediately. A result for
        which ``retry_if_result`` returns True counts as a failed attempt.
        Raises RetryExhausted when every attempt failed.
        """
        sleeper = sleep or asyncio.sleep
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await operation()
            except retry_on as exc:
                last_error = exc
            else:
                if retry_if_result is None or not retry_if_result(result):
                    return result
                last_error = None

            if attempt < self.max_attempts:
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, delay, last_error)
                else:
                    logger.info(
                        "retry_backoff",
                        attempt=attempt,
                        backoff_ms=int(delay * 1000),
                        error=str(last_error) if last_error else None,
                    )
                await sleeper(delay)
        raise RetryExhausted(self.max_attempts, last_error)
