"""
Retry policy for blob storage operations.
Exponential backoff with jitter for transient cloud failures.
"""
import asyncio
import errno
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger('callguard.storage')

# Transient error codes and messages from the network stack and Azure
DEFAULT_RETRYABLE_ERRORS = [
    'ETIMEDOUT',
    'ECONNRESET',
    'ECONNREFUSED',
    'ENOTFOUND',
    'ServerBusy',
    'InternalError',
    'OperationTimedOut',
    'RequestTimeout',
]

RETRYABLE_STATUS_CODES = {429, 503}

JITTER_RATIO = 0.2


@dataclass
class RetryOptions:
    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))


@dataclass
class RetryResult:
    success: bool
    attempts: int
    total_duration_ms: float
    data: Any = None
    error: Optional[BaseException] = None


class RetryError(Exception):
    """Raised by retry_blob_operation when an operation could not be completed."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def add_jitter(delay_ms: float) -> float:
    """Spread delay by +/-20% to avoid a thundering herd."""
    jitter = delay_ms * JITTER_RATIO * (random.random() - 0.5) * 2
    return max(0.0, delay_ms + jitter)


def compute_backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Base delay (ms) slept after failed attempt number ``attempt`` (1-based)."""
    return min(
        options.initial_delay_ms * options.backoff_multiplier ** (attempt - 1),
        options.max_delay_ms,
    )


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ('status_code', 'status'):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, 'response', None)
    value = getattr(response, 'status_code', None)
    return value if isinstance(value, int) else None


def _error_codes(error: BaseException) -> List[str]:
    codes = []
    for attr in ('code', 'error_code'):
        value = getattr(error, attr, None)
        if value:
            codes.append(str(value))
    err_no = getattr(error, 'errno', None)
    if isinstance(err_no, int) and err_no in errno.errorcode:
        codes.append(errno.errorcode[err_no])
    return codes


def is_retryable_error(error: Optional[BaseException], retryable_errors: List[str] = None) -> bool:
    """Classify an error as transient (worth retrying) or not."""
    if error is None:
        return False
    patterns = DEFAULT_RETRYABLE_ERRORS if retryable_errors is None else retryable_errors

    message = str(error)
    codes = _error_codes(error)
    matches_pattern = any(
        pattern in message or any(pattern in code for code in codes)
        for pattern in patterns
    )

    return matches_pattern or _status_code(error) in RETRYABLE_STATUS_CODES


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    options: Optional[RetryOptions] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult:
    """
    Execute an async operation with exponential backoff retry.

    Never raises for failures of ``operation``; callers inspect
    ``RetryResult.success``.

    Args:
        operation: Zero-argument callable returning an awaitable
        options: Retry configuration
        sleep: Awaitable sleep taking seconds (injectable for tests)
    """
    options = options or RetryOptions()
    start = time.monotonic()
    attempts = 0
    last_error: Optional[BaseException] = None

    while attempts <= options.max_retries:
        attempts += 1
        try:
            data = await operation()
            return RetryResult(
                success=True,
                data=data,
                attempts=attempts,
                total_duration_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            last_error = e
            should_retry = attempts <= options.max_retries and is_retryable_error(e, options.retryable_errors)
            if not should_retry:
                break

            delay_ms = add_jitter(compute_backoff_delay(attempts, options))
            logger.warning(
                f"Retry attempt {attempts}/{options.max_retries} after {delay_ms:.0f}ms. Error: {e}"
            )
            await sleep(delay_ms / 1000.0)

    return RetryResult(
        success=False,
        error=last_error,
        attempts=attempts,
        total_duration_ms=(time.monotonic() - start) * 1000,
    )


BLOB_RETRY_OPTIONS = RetryOptions(
    max_retries=3,
    initial_delay_ms=1000,
    max_delay_ms=10000,
    backoff_multiplier=2,
)


async def retry_blob_operation(
    operation: Callable[[], Awaitable[Any]],
    operation_name: str = "Blob operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Run a storage call with the blob retry tuning, raising RetryError on failure."""
    result = await retry_with_backoff(operation, BLOB_RETRY_OPTIONS, sleep=sleep)

    if result.success:
        if result.attempts > 1:
            logger.info(
                f"{operation_name} succeeded after {result.attempts} attempts ({result.total_duration_ms:.0f}ms)"
            )
        return result.data

    raise RetryError(
        f"{operation_name} failed after {result.attempts} attempts: {result.error}",
        attempts=result.attempts,
        last_error=result.error,
    )
