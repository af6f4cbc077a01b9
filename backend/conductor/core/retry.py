"""
Retry Policy

Exponential backoff for whole-run retries of the Execution Loop:
start at 1s, double per attempt, cap at 30s, plus non-negative jitter.
Only transient failures (rate limit, overloaded, network) are retried.
"""

from __future__ import annotations
import random
from typing import Callable, Optional

from ..errors import FailureKind
from .constants import (
    BACKOFF_FACTOR,
    BACKOFF_INITIAL_SECONDS,
    BACKOFF_JITTER_RATIO,
    BACKOFF_MAX_SECONDS,
    MAX_RUN_ATTEMPTS,
)


class RetryPolicy:
    """
    Run retry policy

    Example:
        policy = RetryPolicy()
        if policy.should_retry(attempt, kind):
            await asyncio.sleep(policy.compute_delay(attempt))
    """

    def __init__(
        self,
        max_attempts: int = MAX_RUN_ATTEMPTS,
        initial_delay: float = BACKOFF_INITIAL_SECONDS,
        backoff_factor: float = BACKOFF_FACTOR,
        max_delay: float = BACKOFF_MAX_SECONDS,
        jitter_ratio: float = BACKOFF_JITTER_RATIO,
        rng: Optional[Callable[[float, float], float]] = None,
    ):
        """
        Args:
            max_attempts: Total attempts including the first one
            initial_delay: Delay before the second attempt (seconds)
            backoff_factor: Multiplier per subsequent attempt
            max_delay: Cap applied before jitter
            jitter_ratio: Upper bound of additive jitter as a fraction of the delay
            rng: uniform(a, b) source, injectable for deterministic tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if initial_delay < 0 or max_delay < 0 or jitter_ratio < 0:
            raise ValueError("delays and jitter must be non-negative")

        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._uniform = rng or random.uniform

    def base_delay(self, attempt: int) -> float:
        """
        Backoff delay after the given failed attempt (1-based), without jitter

        attempt=1 -> 1s, 2 -> 2s, 3 -> 4s ... capped at max_delay
        """
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)

    def compute_delay(self, attempt: int) -> float:
        """Backoff delay plus jitter; never below the base delay"""
        delay = self.base_delay(attempt)
        if self.jitter_ratio > 0 and delay > 0:
            delay += self._uniform(0.0, delay * self.jitter_ratio)
        return delay

    def should_retry(self, attempt: int, kind: FailureKind) -> bool:
        """Whether a failed attempt (1-based) should be followed by another one"""
        if attempt >= self.max_attempts:
            return False
        return kind.is_retryable

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial={self.initial_delay}s, max={self.max_delay}s)"
        )
