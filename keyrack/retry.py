"""
Retry with linearly increasing, jittered backoff.

The executor retries unconditionally: any exception counts as a failed
attempt. Whether a final failure is terminal is the caller's decision.

Usage:
    executor = RetryExecutor(RetryPolicy(max_attempts=3))
    executor.execute(lambda: gcloud.enable_services(project, services))
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from keyrack.errors import RetryExhaustedError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry limits and backoff shape.

    Wait before attempt n+1 is ``n * base_delay + uniform(0, jitter)``,
    so waits grow with every failure and concurrent jobs spread out.
    """

    max_attempts: int = 3
    base_delay: float = 10.0
    jitter: float = 5.0

    def backoff(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-indexed)."""
        rng = rng or random
        return attempt * self.base_delay + rng.uniform(0, self.jitter)

    @classmethod
    def from_config(cls, config: Any) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_retry_attempts,
            base_delay=config.retry_base_delay,
            jitter=config.retry_jitter,
        )


class RetryExecutor:
    """Run an operation up to ``max_attempts`` times."""

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy
        self._sleep = sleep
        self._rng = rng

    def execute(
        self,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
        description: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> T:
        """
        Call ``operation`` until it returns without raising.

        Args:
            operation: Zero-argument callable
            max_attempts: Override the policy's attempt limit
            description: Label used in log lines
            logger: Logger for retry messages (typically the job's logger)

        Returns:
            The first successful result

        Raises:
            RetryExhaustedError: After the last attempt fails, wrapping its error
        """
        attempts = max_attempts if max_attempts is not None else self.policy.max_attempts
        if attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {attempts}")
        label = description or getattr(operation, "__name__", "operation")

        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except Exception as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self.policy.backoff(attempt, self._rng)
                if logger:
                    logger.warning(
                        f"Retry {attempt}/{attempts}: {label} failed ({e}); waiting {delay:.0f}s"
                    )
                self._sleep(delay)

        if logger:
            logger.error(f"{label} failed after {attempts} attempt(s): {last_error}")
        raise RetryExhaustedError(attempts, last_error) from last_error
