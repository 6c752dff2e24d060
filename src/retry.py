"""
Punto Settlement - Backoff for side-effect-free reads

Two places re-try on their own: re-reading the payout queue from the store
and polling the chain for a receipt or block height. Nothing that writes
(reviews, payment marks, transfer submission) goes through here; a write
that fails is reported to the caller and settled by reconciliation.

Usage:
    from retry import retry_call, RetryConfig

    config = RetryConfig.from_env(retryable_exceptions=(ExternalServiceError,))
    queue = retry_call(ledger.list_pending, args=(issue_id,), config=config)

Environment Variables:
    RETRY_MAX_ATTEMPTS=3
    RETRY_BASE_DELAY=0.5
    RETRY_MAX_DELAY=30.0
    RETRY_EXPONENTIAL_BASE=2.0
    RETRY_JITTER=0.1
"""

import logging
import os
import random
import time
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Raise to force a retry regardless of the configured exception types."""


class NonRetryableError(Exception):
    """Raise to stop retrying immediately, even for a listed type."""


@dataclass
class RetryConfig:
    """How often and how patiently to re-try a read."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    # Matched with isinstance, so subclasses count too
    retryable_exceptions: tuple = (ConnectionError, TimeoutError)

    log_retries: bool = True
    log_level: int = logging.WARNING

    # Tests pass a recorder here
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_env(cls, retryable_exceptions: tuple | None = None) -> "RetryConfig":
        """Read the RETRY_* variables; ``retryable_exceptions`` overrides the default types."""
        overrides = {} if retryable_exceptions is None else {"retryable_exceptions": retryable_exceptions}
        return cls(
            max_retries=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY", "0.5")),
            max_delay=float(os.getenv("RETRY_MAX_DELAY", "30.0")),
            exponential_base=float(os.getenv("RETRY_EXPONENTIAL_BASE", "2.0")),
            jitter=float(os.getenv("RETRY_JITTER", "0.1")),
            **overrides,
        )

    def delays(self) -> Iterator[float]:
        """The wait before each retry, in order."""
        for attempt in range(self.max_retries):
            yield calculate_delay(attempt, self.base_delay, self.exponential_base, self.max_delay, self.jitter)

    def should_retry(self, exception: Exception) -> bool:
        return is_retryable_exception(exception, self.retryable_exceptions)


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float,
) -> float:
    """
    Exponential backoff with symmetric jitter.

    ``base_delay * exponential_base ** attempt``, capped at ``max_delay``,
    then moved by up to ``jitter`` of itself in either direction.
    """
    capped = min(base_delay * exponential_base ** attempt, max_delay)
    spread = capped * jitter * (2 * random.random() - 1) if jitter > 0 else 0.0
    return max(0.0, capped + spread)


def is_retryable_exception(exception: Exception, retryable_types: tuple) -> bool:
    """Explicit markers win; otherwise the exception must be one of ``retryable_types``."""
    if isinstance(exception, (RetryableError, NonRetryableError)):
        return isinstance(exception, RetryableError)
    return isinstance(exception, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
) -> Any:
    """
    Call ``func(*args, **kwargs)``, re-trying retryable failures.

    The first non-retryable exception propagates at once; a retryable one
    propagates after ``config.max_retries`` further attempts.
    """
    config = config or RetryConfig()
    if config.max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    kwargs = kwargs or {}
    name = getattr(func, "__name__", repr(func))
    schedule = enumerate(config.delays(), start=1)

    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e):
                raise
            attempt, delay = next(schedule, (None, None))
            if attempt is None:
                if config.log_retries:
                    logger.log(config.log_level, "Giving up on %s after %d retries: %s", name, config.max_retries, e)
                raise
            if config.log_retries:
                logger.log(
                    config.log_level,
                    "Retry %d/%d for %s after %.2fs: %s",
                    attempt, config.max_retries, name, delay, e,
                )
            config.sleep(delay)
