"""
Retry logic with exponential backoff and jitter for async calls.

Used by the campaign sync, whose HTTP calls are retried on transport
errors and retryable status codes before the side channel gives up.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset((429, 500, 502, 503, 504))


class RetryableStatusError(Exception):
    """Raised for HTTP answers worth another attempt (429/5xx)."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code} from {response.request.url}")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.3  # 0-30% jitter
    retryable_exceptions: Tuple[Type[Exception], ...] = (httpx.TransportError, RetryableStatusError)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    jitter = random.uniform(0, delay * config.jitter_factor)
    return delay + jitter


def raise_for_retryable_status(response: httpx.Response) -> httpx.Response:
    if response.status_code in RETRYABLE_STATUS_CODES:
        raise RetryableStatusError(response)
    return response


async def retry_async(func: Callable[..., T], *args, config: Optional[RetryConfig] = None, **kwargs) -> T:
    """
    Execute async function with retry logic.

    Args:
        func: Async function to call
        *args: Positional arguments for func
        config: Retry configuration
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function call

    Raises:
        Last exception if all retries exhausted
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_retries:
                logger.error(
                    f"All {config.max_retries + 1} attempts failed for {name}",
                    extra={
                        "function": name,
                        "attempts": config.max_retries + 1,
                        "final_error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_retries + 1} failed for {name}, retrying in {delay:.2f}s: {e}",
                extra={
                    "function": name,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                    "error_type": type(e).__name__,
                },
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Unexpected retry state")


# Campaign API calls happen inside the webhook's Lambda budget: keep them short
CAMPAIGN_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=0.5,
    max_delay=4.0,
    jitter_factor=0.3,
)
