"""
Bounded exponential backoff for transient source failures.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import TransientSourceError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff settings for retrying ``TransientSourceError``.

    ``max_attempts`` counts the initial call, so ``max_attempts=4`` means one
    call plus up to three retries (1s, 2s, 4s with the default base delay).
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.get("MIGRATION_RETRY_MAX_ATTEMPTS", 4))),
            base_delay=float(config.get("MIGRATION_RETRY_BASE_DELAY", 1.0)),
            max_delay=float(config.get("MIGRATION_RETRY_MAX_DELAY", 30.0)),
        )

    def backoff(self, attempt: int, error: TransientSourceError | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based); honours ``retry_after``."""
        delay = self.base_delay * (2 ** max(0, attempt - 1))
        if error is not None and error.retry_after is not None:
            delay = max(delay, float(error.retry_after))
        return min(delay, self.max_delay)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_fn: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, TransientSourceError], None] | None = None,
    description: str = "source call",
) -> T:
    """
    Invoke ``fn`` retrying only on ``TransientSourceError``.

    Any other exception propagates immediately. When attempts run out the last
    transient error is re-raised for the caller to decide what to do.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TransientSourceError as exc:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %s attempts: %s",
                    description,
                    attempt,
                    exc,
                    extra={"retry_attempts": attempt},
                )
                raise
            delay = policy.backoff(attempt, exc)
            logger.info(
                "%s failed with a transient error; retrying in %.2fs",
                description,
                delay,
                extra={"retry_attempt": attempt, "retry_delay": delay},
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep_fn(delay)
