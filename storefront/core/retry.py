"""
Bounded Retry with Exponential Backoff

Used by every outbound call to the marketplace/payment APIs, by the merchant
order poller and by the stock rollback.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from storefront.core.exceptions import MarketplaceAPIError
from storefront.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for one call site"""
    max_retries: int = 3          # Retries after the first attempt
    initial_delay: float = 1.0    # Seconds before the first retry
    max_delay: float = 10.0       # Cap for a single wait


def compute_backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """
    Delay before retry number ``attempt + 1``: initial_delay * 2**attempt, capped.

    Large attempt numbers return the cap without computing huge powers.
    """
    if attempt < 0:
        attempt = 0
    if initial_delay <= 0 or max_delay <= 0:
        return 0.0
    if attempt >= 64:
        return max_delay
    return min(initial_delay * (1 << attempt), max_delay)


def _retry_nothing(error: Exception) -> bool:
    return False


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds or retries are exhausted.

    ``should_retry`` defaults to retrying nothing, so each caller opts in per
    error class. The last error is re-raised unchanged.
    """
    predicate = should_retry or _retry_nothing
    name = operation_name or getattr(operation, "__name__", "operation")
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as error:
            if attempt >= max_retries or not predicate(error):
                raise

            delay = compute_backoff_delay(attempt, initial_delay, max_delay)
            logger.warning(
                f"Retrying {name}",
                extra_data={
                    "operation": name,
                    "attempt": attempt + 1,
                    "max_retries": max_retries,
                    "delay_seconds": delay,
                    "error": str(error),
                },
            )
            await sleep(delay)
            attempt += 1


async def retry_with_policy(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool] | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str | None = None,
) -> T:
    return await retry_with_backoff(
        operation,
        max_retries=policy.max_retries,
        initial_delay=policy.initial_delay,
        max_delay=policy.max_delay,
        should_retry=should_retry,
        sleep=sleep,
        operation_name=operation_name,
    )


def is_retryable_http_error(error: Exception) -> bool:
    """429/5xx from the upstream API, or a network-level failure"""
    if isinstance(error, MarketplaceAPIError):
        return error.is_retryable
    return isinstance(error, httpx.TransportError)


def retry_any_error(error: Exception) -> bool:
    return True
