from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .config import MAX_RETRY_ATTEMPTS, RETRY_BASE_DELAY_S, RETRY_JITTER_S, RETRY_MAX_DELAY_S

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryError(Exception):
    """Raised when retryable failures used up the attempts or the deadline."""

    def __init__(self, last_error: Optional[BaseException], attempts: int):
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """
    Capped exponential backoff with additive jitter.

    Delay before attempt n+1 is min(max_delay_s, base_delay_s * 2**(n-1)) + U(0, jitter_s).
    """

    max_attempts: int = MAX_RETRY_ATTEMPTS
    base_delay_s: float = RETRY_BASE_DELAY_S
    max_delay_s: float = RETRY_MAX_DELAY_S
    jitter_s: float = RETRY_JITTER_S

    def backoff(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        base = min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))
        jitter = rng(0.0, self.jitter_s) if self.jitter_s > 0 else 0.0
        return base + jitter

    def worst_case_s(self, per_attempt_timeout_s: float) -> float:
        """Upper bound on wall time: every attempt times out and every jitter is maximal."""
        sleeps = sum(
            min(self.max_delay_s, self.base_delay_s * (2 ** (n - 1))) + self.jitter_s
            for n in range(1, self.max_attempts)
        )
        return self.max_attempts * per_attempt_timeout_s + sleeps

    def run(
        self,
        fn: Callable[[Optional[float]], T],
        is_retryable: Callable[[BaseException], bool],
        deadline: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> T:
        """
        Call `fn(remaining_s)` until it succeeds.

        `remaining_s` is the time left before `deadline` (None without one).
        Errors for which `is_retryable` is False propagate unchanged.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            remaining = None if deadline is None else deadline - clock()
            if remaining is not None and remaining <= 0:
                raise RetryError(last_error, attempt - 1)
            try:
                return fn(remaining)
            except Exception as e:
                if not is_retryable(e):
                    raise
                last_error = e
            if attempt == self.max_attempts:
                break
            delay = self.backoff(attempt, rng)
            if deadline is not None and clock() + delay >= deadline:
                logger.warning("Retry deadline reached after %d attempt(s): %s", attempt, last_error)
                raise RetryError(last_error, attempt)
            logger.info("Attempt %d/%d failed (%s); retrying in %.2fs", attempt, self.max_attempts, last_error, delay)
            sleep(delay)
        raise RetryError(last_error, self.max_attempts)
