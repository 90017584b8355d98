"""
Regression tests for the storage retry helper.

Usage:
    pytest tests/regression/test_retry_policy.py -v
"""

import asyncio
import errno

import pytest

from backend.app.retry_policy import (
    BLOB_RETRY_OPTIONS,
    RetryError,
    RetryOptions,
    add_jitter,
    compute_backoff_delay,
    is_retryable_error,
    retry_blob_operation,
    retry_with_backoff,
)


class StatusError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def flaky(failures, result="ok"):
    """Operation that raises each of ``failures`` once, then returns ``result``."""
    calls = {"count": 0}
    pending = list(failures)

    async def operation():
        calls["count"] += 1
        if pending:
            raise pending.pop(0)
        return result
    return operation, calls


class TestRetryableClassification:
    """Which errors count as transient."""

    def test_message_pattern_is_retryable(self):
        assert is_retryable_error(Exception("Server returned ServerBusy"))

    def test_code_attribute_is_retryable(self):
        error = Exception("boom")
        error.code = "ECONNRESET"
        assert is_retryable_error(error)

    def test_errno_name_is_retryable(self):
        assert is_retryable_error(ConnectionResetError(errno.ECONNRESET, "reset by peer"))

    def test_throttling_status_is_retryable(self):
        assert is_retryable_error(StatusError("slow down", 429))
        assert is_retryable_error(StatusError("unavailable", 503))

    def test_client_errors_are_not_retryable(self):
        assert not is_retryable_error(StatusError("missing", 404))
        assert not is_retryable_error(ValueError("bad input"))
        assert not is_retryable_error(None)

    def test_custom_pattern_list(self):
        assert is_retryable_error(Exception("FlakyThing"), ["FlakyThing"])
        assert not is_retryable_error(Exception("ServerBusy"), ["FlakyThing"])


class TestBackoff:
    """Delay computation."""

    def test_exponential_growth_capped(self):
        options = RetryOptions(initial_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=2)
        assert [compute_backoff_delay(n, options) for n in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]

    def test_jitter_stays_within_twenty_percent(self):
        for _ in range(200):
            assert 800 <= add_jitter(1000) <= 1200


class TestRetryWithBackoff:
    """Attempt counting and sleep behaviour."""

    def test_succeeds_after_transient_failures(self):
        operation, calls = flaky([Exception("ETIMEDOUT"), Exception("ETIMEDOUT")])
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)

        result = asyncio.run(retry_with_backoff(operation, RetryOptions(max_retries=3), sleep=sleep))

        assert result.success
        assert result.data == "ok"
        assert result.attempts == 3
        assert calls["count"] == 3
        assert len(sleeps) == 2
        assert 0.8 <= sleeps[0] <= 1.2
        assert 1.6 <= sleeps[1] <= 2.4

    def test_exhaustion_makes_max_retries_plus_one_calls(self):
        errors = [Exception("ServerBusy") for _ in range(10)]
        operation, calls = flaky(errors)
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)

        result = asyncio.run(retry_with_backoff(operation, RetryOptions(max_retries=3), sleep=sleep))

        assert not result.success
        assert calls["count"] == 4
        assert result.attempts == 4
        assert len(sleeps) == 3
        assert "ServerBusy" in str(result.error)

    def test_non_retryable_error_returns_after_one_call(self):
        operation, calls = flaky([ValueError("invalid metadata")])
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)

        result = asyncio.run(retry_with_backoff(operation, sleep=sleep))

        assert not result.success
        assert calls["count"] == 1
        assert sleeps == []
        assert isinstance(result.error, ValueError)


class TestRetryBlobOperation:
    """Storage tuning and error surfacing."""

    def test_storage_tuning(self):
        assert BLOB_RETRY_OPTIONS.max_retries == 3
        assert BLOB_RETRY_OPTIONS.initial_delay_ms == 1000
        assert BLOB_RETRY_OPTIONS.max_delay_ms == 10000

    def test_returns_data(self):
        operation, _ = flaky([], result={"etag": "1"})
        assert asyncio.run(retry_blob_operation(operation, "Get properties")) == {"etag": "1"}

    def test_raises_retry_error_with_last_error(self):
        cause = StatusError("gone", 404)
        operation, calls = flaky([cause])

        with pytest.raises(RetryError) as excinfo:
            asyncio.run(retry_blob_operation(operation, "Download file: a.json"))

        assert excinfo.value.attempts == 1
        assert excinfo.value.last_error is cause
        assert "Download file: a.json" in str(excinfo.value)
        assert calls["count"] == 1
