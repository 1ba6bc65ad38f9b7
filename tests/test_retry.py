"""Tests for retry with exponential backoff."""

import pytest

from secretscan.infrastructure.errors import NonRetryableError, RetryableError, TargetError
from secretscan.infrastructure.retry import RetryConfig, with_retry

NO_DELAY = RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0)


class Flaky:
    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    operation = Flaky(2, RetryableError("503"))

    assert await with_retry(operation, NO_DELAY) == "ok"
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_target_error():
    operation = Flaky(5, RetryableError("503"))

    with pytest.raises(TargetError, match="after 3 attempts"):
        await with_retry(operation, NO_DELAY)
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_errors_fail_fast():
    operation = Flaky(5, NonRetryableError("401"))

    with pytest.raises(NonRetryableError):
        await with_retry(operation, NO_DELAY)
    assert operation.calls == 1
