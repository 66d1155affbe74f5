"""
Bounded retry with backoff for remote operations.

Every agent session and AI-assisted conflict resolution goes through
execute_with_retry(). The runtime wraps exactly one call site and knows
nothing about tasks or branches; callers compose it.
"""

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

from fixpipe.cancellation import CancellationToken, Cancelled

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"429"),
    re.compile(r"timeout", re.IGNORECASE),
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"connection", re.IGNORECASE),
    re.compile(r"ECONNRESET"),
    re.compile(r"ETIMEDOUT"),
    re.compile(r"ENOTFOUND"),
    re.compile(r"overloaded", re.IGNORECASE),
    re.compile(r"service unavailable", re.IGNORECASE),
    re.compile(r"503"),
]

DEFAULT_NON_RETRYABLE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"invalid api key", re.IGNORECASE),
    re.compile(r"authentication", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
    re.compile(r"401"),
    re.compile(r"forbidden", re.IGNORECASE),
    re.compile(r"403"),
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"404"),
]


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Total number of attempts (the first call included)
        base_delay_ms: Base delay between attempts in milliseconds
        max_delay_ms: Upper bound for any single delay
        exponential_backoff: Double the delay each attempt instead of growing linearly
        jitter_factor: Symmetric random spread applied to each delay (0.1 = +/-10%)
        retryable_patterns: Error messages matching any of these are retried
        non_retryable_patterns: Error messages matching any of these are never retried
        retry_on_any_failure: Retry every failure regardless of patterns
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential_backoff: bool = True
    jitter_factor: float = 0.1
    retryable_patterns: list[re.Pattern[str]] = field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_PATTERNS)
    )
    non_retryable_patterns: list[re.Pattern[str]] = field(
        default_factory=lambda: list(DEFAULT_NON_RETRYABLE_PATTERNS)
    )
    retry_on_any_failure: bool = False


@dataclass
class RetryAttempt:
    """Record of one failed attempt."""

    attempt: int
    error: str
    delay_ms: float
    timestamp: datetime


@dataclass
class RetryResult(Generic[T]):
    """Outcome of execute_with_retry().

    On success `value` holds the function's return value; on failure
    `error` holds the last exception raised.
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: list[RetryAttempt] = field(default_factory=list)
    total_duration_ms: float = 0.0


def calculate_retry_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate the delay before the next attempt.

    Args:
        attempt: The attempt that just failed (1-based)
        config: Retry configuration parameters

    Returns:
        Delay in milliseconds, always within [0, max_delay_ms]
    """
    if config.exponential_backoff:
        delay = config.base_delay_ms * 2 ** (attempt - 1)
    else:
        delay = config.base_delay_ms * attempt

    if config.jitter_factor > 0:
        jitter = delay * config.jitter_factor * (random.random() * 2 - 1)
        delay += jitter

    return min(max(delay, 0), config.max_delay_ms)


def is_error_retryable(message: str, config: RetryConfig) -> bool:
    """Decide whether an error message warrants another attempt.

    Non-retryable patterns take precedence over retryable ones, unless
    retry_on_any_failure is set.
    """
    if config.retry_on_any_failure:
        return True

    for pattern in config.non_retryable_patterns:
        if pattern.search(message):
            logger.debug(f"Error matches non-retryable pattern: {pattern.pattern}")
            return False

    for pattern in config.retryable_patterns:
        if pattern.search(message):
            logger.debug(f"Error matches retryable pattern: {pattern.pattern}")
            return True

    return False


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    token: CancellationToken | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    label: str = "operation",
) -> RetryResult[T]:
    """Run an async callable with bounded retries and backoff.

    Args:
        fn: Zero-argument coroutine function to execute
        config: Retry configuration parameters
        token: Optional cancellation token; cancelling it stops retrying and
            returns the last error
        on_retry: Optional callback invoked for every failed attempt that will
            be retried
        label: Name used in log messages

    Returns:
        RetryResult with the value or the last error, plus every failed attempt
    """
    attempts: list[RetryAttempt] = []
    started = datetime.now()
    last_error: BaseException | None = None

    def _elapsed_ms() -> float:
        return (datetime.now() - started).total_seconds() * 1000

    for attempt in range(1, config.max_retries + 1):
        try:
            if token is not None:
                token.raise_if_cancelled()
            value = await fn()
            return RetryResult(
                success=True,
                value=value,
                attempts=attempts,
                total_duration_ms=_elapsed_ms(),
            )
        except Cancelled as e:
            last_error = last_error or e
            break
        except Exception as e:
            last_error = e
            message = str(e)
            delay_ms = calculate_retry_delay(attempt, config)
            record = RetryAttempt(
                attempt=attempt,
                error=message,
                delay_ms=delay_ms,
                timestamp=datetime.now(),
            )
            attempts.append(record)

            if attempt >= config.max_retries:
                break

            if not is_error_retryable(message, config):
                logger.debug(f"{label}: error is not retryable: {message}")
                break

            logger.warning(
                f"{label}: attempt {attempt}/{config.max_retries} failed: {message}. "
                f"Retrying in {delay_ms / 1000:.2f}s"
            )
            if on_retry is not None:
                on_retry(record)

            try:
                if token is not None:
                    await token.sleep(delay_ms / 1000)
                else:
                    await asyncio.sleep(delay_ms / 1000)
            except Cancelled:
                logger.info(f"{label}: retry cancelled")
                break

    return RetryResult(
        success=False,
        error=last_error or RuntimeError("All retry attempts failed"),
        attempts=attempts,
        total_duration_ms=_elapsed_ms(),
    )
