"""Retry utilities for bridge commands.

Provides bounded retry with exponential backoff and jitter for awaitables
issued over the command bridge.

Usage:
    from termbridge.retry import with_retry, RetryConfig

    config = RetryConfig(max_attempts=3, base_delay=0.2)
    result, stats = await with_retry(
        lambda: bridge.invoke("resize_terminal", args),
        config=config,
        context="resize_terminal",
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

# Signature: (message: str, attempt: int, max_attempts: int, delay: float) -> None
RetryCallback = Callable[[str, int, int, float], None]

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    jitter_factor: float = 0.3  # Random jitter range: [1-jitter, 1+jitter]


@dataclass
class RetryStats:
    """Statistics from a retry operation."""
    attempts: int = 0
    total_delay: float = 0.0
    transient_errors: int = 0
    last_error: Optional[Exception] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def is_transient(exc: BaseException) -> bool:
    """Default classification: timeouts and connection loss are retryable.

    Backend-reported rejections are not; the backend already answered.
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, (ConnectionError, OSError)):
        return True
    return False


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate backoff delay for a retry attempt.

    Args:
        attempt: Current attempt number (1-indexed).
        config: Retry configuration.

    Returns:
        Delay in seconds before next attempt.
    """
    exp_delay = config.base_delay * (2 ** (attempt - 1))
    capped_delay = min(config.max_delay, exp_delay)

    jitter = random.uniform(1 - config.jitter_factor, 1 + config.jitter_factor)
    return capped_delay * jitter


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    context: str = "bridge command",
    classify: Callable[[BaseException], bool] = is_transient,
    on_retry: Optional[RetryCallback] = None,
) -> Tuple[T, RetryStats]:
    """Await ``fn()`` with automatic retry on transient errors.

    Args:
        fn: Zero-argument callable returning a fresh awaitable per attempt.
        config: Retry configuration (defaults if None).
        context: Description for logging (e.g. "open_terminal").
        classify: Returns True for errors worth retrying.
        on_retry: Optional callback for retry notifications.

    Returns:
        Tuple of (result, RetryStats).

    Raises:
        The last exception if all attempts are exhausted or the error is
        not transient. ``asyncio.CancelledError`` is never retried.
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exc: Optional[Exception] = None

    for attempt in range(1, config.max_attempts + 1):
        stats.attempts = attempt

        try:
            result = await fn()
            return result, stats

        except Exception as exc:
            last_exc = exc
            stats.last_error = exc

            transient = classify(exc)
            stats.errors.append({
                "attempt": attempt,
                "error": str(exc)[:200],
                "error_type": exc.__class__.__name__,
                "transient": transient,
            })

            if not transient or attempt == config.max_attempts:
                raise

            stats.transient_errors += 1
            delay = calculate_backoff(attempt, config)
            stats.total_delay += delay

            exc_msg = str(exc)[:140].replace('\n', ' ') or exc.__class__.__name__
            msg = (
                f"[Retry {attempt}/{config.max_attempts}] {context}: "
                f"{exc.__class__.__name__}: {exc_msg} | sleep {delay:.2f}s"
            )
            if on_retry:
                on_retry(msg, attempt, config.max_attempts, delay)
            else:
                logger.warning(msg)

            await asyncio.sleep(delay)

    # Should not reach here, but just in case
    if last_exc:
        raise last_exc
    raise RuntimeError("Retry loop exited without result or exception")


__all__ = [
    'RetryCallback',
    'RetryConfig',
    'RetryStats',
    'calculate_backoff',
    'is_transient',
    'with_retry',
]
