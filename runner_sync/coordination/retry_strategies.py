"""Retry strategies.

Only publishing retries: discovery and transfer fail over or give up
instead. The strategy object decides whether another attempt is allowed
and how long to wait; ``run_with_retry`` drives the loop.

Usage:
    from runner_sync.coordination.retry_strategies import (
        ConstantDelayStrategy,
        RetryContext,
        run_with_retry,
    )

    strategy = ConstantDelayStrategy(max_attempts=3, delay=2.0)
    ctx = RetryContext(target="origin/main", operation="git push")
    await run_with_retry(push, strategy, ctx, retry_on=(ProcessError,))
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = [
    "ConstantDelayStrategy",
    "RetryContext",
    "RetryExhaustedError",
    "RetryStrategy",
    "run_with_retry",
]


@dataclass
class RetryContext:
    """Retry state for one operation."""

    target: str = ""
    operation: str = ""
    attempt: int = 0  # completed attempts
    failures: list[Exception] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)
    total_delay: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def record_failure(self, error: Exception) -> None:
        self.failures.append(error)
        self.attempt += 1

    def record_delay(self, delay: float) -> None:
        self.total_delay += delay

    @property
    def elapsed_time(self) -> float:
        return time.monotonic() - self.start_time

    @property
    def last_error(self) -> Exception | None:
        return self.failures[-1] if self.failures else None


@dataclass
class RetryExhaustedError(Exception):
    """Raised when all attempts have failed."""

    context: RetryContext
    message: str = ""

    def __str__(self) -> str:
        msg = self.message or f"Retry exhausted for {self.context.operation}"
        return (
            f"{msg} "
            f"(attempts={self.context.attempt}, "
            f"target={self.context.target}, "
            f"last_error={self.context.last_error})"
        )


class RetryStrategy(ABC):
    """Decides whether to try again and how long to wait first."""

    def __init__(self, max_attempts: int = 3, max_total_time: float = 300.0):
        """
        Args:
            max_attempts: Total attempts, including the first one
            max_total_time: Give up once this much time has passed (seconds)
        """
        self.max_attempts = max_attempts
        self.max_total_time = max_total_time

    @abstractmethod
    def get_delay(self, ctx: RetryContext) -> float:
        pass

    def should_retry(self, ctx: RetryContext) -> bool:
        if ctx.attempt >= self.max_attempts:
            return False
        if ctx.elapsed_time >= self.max_total_time:
            return False
        return True

    def on_retry(self, ctx: RetryContext, delay: float) -> None:
        logger.warning(
            f"{ctx.operation} failed (attempt {ctx.attempt}/{self.max_attempts}): "
            f"{ctx.last_error}; retrying in {delay:g}s"
        )


class ConstantDelayStrategy(RetryStrategy):
    """Fixed delay between attempts."""

    def __init__(self, max_attempts: int = 3, delay: float = 2.0, max_total_time: float = 300.0):
        super().__init__(max_attempts, max_total_time)
        self.delay = delay

    def get_delay(self, ctx: RetryContext) -> float:
        return self.delay


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    strategy: RetryStrategy,
    ctx: RetryContext | None = None,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or the strategy gives up.

    Exceptions outside ``retry_on`` propagate immediately.

    Raises:
        RetryExhaustedError: Every allowed attempt failed; the last failure
            is chained as ``__cause__``.
    """
    ctx = ctx or RetryContext()
    while True:
        try:
            return await operation()
        except retry_on as e:
            ctx.record_failure(e)
            if not strategy.should_retry(ctx):
                raise RetryExhaustedError(ctx) from e
            delay = strategy.get_delay(ctx)
            strategy.on_retry(ctx, delay)
            ctx.record_delay(delay)
            await sleep(delay)
