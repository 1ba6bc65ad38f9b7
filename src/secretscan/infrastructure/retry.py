"""Retry configuration and logic for target HTTP calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import NonRetryableError, RetryableError, TargetError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts for transient errors.
        base_delay: Initial delay in seconds before first retry.
        max_delay: Maximum delay in seconds between retries.
        exponential_base: Base for exponential backoff calculation.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0


async def with_retry(operation, config: RetryConfig):
    """
    Execute an operation with exponential backoff retry.

    Args:
        operation: Async callable to execute
        config: Retry configuration

    Returns:
        Result of the operation

    Raises:
        NonRetryableError: Immediately, without further attempts
        TargetError: If all retries are exhausted
    """
    last_error: Optional[Exception] = None

    for attempt in range(config.max_retries + 1):
        try:
            return await operation()
        except NonRetryableError:
            raise
        except RetryableError as e:
            last_error = e

            if attempt == config.max_retries:
                logger.error(
                    "All attempts failed",
                    extra={"attempts": config.max_retries + 1, "error": str(e)},
                )
                raise TargetError(f"Failed after {config.max_retries + 1} attempts: {e}") from e

            delay = min(
                config.base_delay * (config.exponential_base**attempt),
                config.max_delay,
            )

            logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")

            await asyncio.sleep(delay)

    raise TargetError(f"Unexpected retry loop exit: {last_error}")
