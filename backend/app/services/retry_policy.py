"""Retry with exponential backoff for platform calls"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.errors import ProviderRequestError
from app.services.error_classifier import RawPlatformError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int
    base_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float


PLATFORM_RETRY_CONFIGS = {
    "facebook": RetryConfig(max_retries=3, base_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2),
    "instagram": RetryConfig(max_retries=3, base_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2),
    "twitter": RetryConfig(max_retries=2, base_delay_ms=2000, max_delay_ms=60000, backoff_multiplier=3),
    "linkedin": RetryConfig(max_retries=2, base_delay_ms=1500, max_delay_ms=45000, backoff_multiplier=2.5),
}

DEFAULT_RETRY_CONFIG = RetryConfig(max_retries=2, base_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2)


def calculate_retry_delay(attempt: int, config: RetryConfig, rand: Callable[[], float] = random.random) -> int:
    """Delay in ms: base * multiplier^attempt, capped at max, plus up to 10% jitter"""
    exponential = config.base_delay_ms * (config.backoff_multiplier ** attempt)
    capped = min(exponential, config.max_delay_ms)
    return int(capped + capped * 0.1 * rand())


async def call_with_retry(
    platform: str,
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    honour_retry_after: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """Run ``operation``, retrying classified retryable failures

    ``honour_retry_after`` waits for the platform's retry_after hint instead of
    the backoff delay; only background jobs should turn it on, a request
    handler would block for up to hours.

    Raises:
        ProviderRequestError: The last failure once retries are exhausted or
            the failure is not retryable
    """
    config = config or PLATFORM_RETRY_CONFIGS.get(platform, DEFAULT_RETRY_CONFIG)
    attempt = 0
    while True:
        try:
            return await operation()
        except ProviderRequestError as e:
            classified = classify(platform, RawPlatformError.from_exception(e))
            if not classified.is_retryable or attempt >= config.max_retries:
                raise
            if honour_retry_after and classified.retry_after:
                delay_seconds = float(classified.retry_after)
            else:
                delay_seconds = calculate_retry_delay(attempt, config) / 1000
            logger.warning(
                f"{platform} call failed with {classified.code}, retry {attempt + 1}/{config.max_retries} "
                f"in {delay_seconds:.1f}s"
            )
            await sleep(delay_seconds)
            attempt += 1
