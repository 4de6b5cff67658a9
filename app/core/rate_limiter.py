"""
Retry and throttling utilities for tracker API operations.

Provides exponential backoff for transient failures, a separate cooldown
path for rate-limit responses, and progress tracking for long batch runs.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar
from datetime import datetime

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_rate_limit_error(error: BaseException) -> bool:
    """True for 429 responses or errors whose message says so."""
    if getattr(error, "status_code", None) == 429:
        return True
    message = str(error).lower()
    return "rate limit" in message or "too many requests" in message


def is_client_error(error: BaseException) -> bool:
    """True for 4xx responses other than 429, which retrying cannot fix."""
    status_code = getattr(error, "status_code", None)
    return isinstance(status_code, int) and 400 <= status_code < 500 and status_code != 429


class RetryExecutor:
    """
    Exponential-backoff wrapper for remote calls.

    - failures are retried up to ``max_attempts`` times with a delay of
      ``base_delay_ms * 2 ** attempt`` capped at ``max_delay_ms``
    - rate-limit failures wait ``rate_limit_delay_ms`` and do not count
      against ``max_attempts``
    - 4xx responses other than 429 are raised immediately
    """

    def __init__(
        self,
        base_delay_ms: Optional[int] = None,
        max_attempts: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        rate_limit_delay_ms: Optional[int] = None,
        max_rate_limit_waits: Optional[int] = None,
    ):
        self.base_delay_ms = settings.retry_base_delay_ms if base_delay_ms is None else base_delay_ms
        self.max_attempts = settings.retry_max_attempts if max_attempts is None else max_attempts
        self.max_delay_ms = settings.retry_max_delay_ms if max_delay_ms is None else max_delay_ms
        self.rate_limit_delay_ms = (
            settings.rate_limit_retry_delay_ms if rate_limit_delay_ms is None else rate_limit_delay_ms
        )
        self.max_rate_limit_waits = (
            settings.rate_limit_max_waits if max_rate_limit_waits is None else max_rate_limit_waits
        )
        self.operation_count = 0
        self.rate_limit_hits = 0

    def backoff_ms(self, attempt: int) -> int:
        return min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation"
    ) -> T:
        """
        Run ``operation`` with retries.

        Args:
            operation: Zero-argument coroutine function performing the call
            operation_name: Name for logging purposes

        Returns:
            Result of the operation

        Raises:
            Exception: The last failure once retries are exhausted
        """
        attempt = 0
        rate_limit_waits = 0

        while True:
            try:
                result = await operation()
                self.operation_count += 1
                return result
            except Exception as e:
                if is_rate_limit_error(e):
                    self.rate_limit_hits += 1
                    if rate_limit_waits >= self.max_rate_limit_waits:
                        logger.error(
                            f"{operation_name}: still rate limited after {rate_limit_waits} cooldowns"
                        )
                        raise
                    rate_limit_waits += 1
                    logger.warning(
                        f"Rate limited during {operation_name}. "
                        f"Waiting {self.rate_limit_delay_ms / 1000:.0f}s before retrying..."
                    )
                    await asyncio.sleep(self.rate_limit_delay_ms / 1000.0)
                    continue

                if is_client_error(e):
                    logger.error(f"{operation_name} failed with client error: {e}")
                    raise

                if attempt >= self.max_attempts - 1:
                    logger.error(f"{operation_name} failed after {attempt + 1} attempt(s): {e}")
                    raise

                delay_ms = self.backoff_ms(attempt)
                attempt += 1
                logger.warning(
                    f"{operation_name} failed (attempt {attempt}/{self.max_attempts}): {e}. "
                    f"Retrying in {delay_ms}ms..."
                )
                await asyncio.sleep(delay_ms / 1000.0)


async def throttle(delay_ms: int) -> None:
    """Apply an inter-item delay."""
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000.0)


class BatchOperationTracker:
    """Progress of a pass over many issues, in the shape the bulk job slot publishes."""

    MAX_ERRORS = 20

    def __init__(self, total_items: int):
        self.total_items = total_items
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.errors: list[str] = []
        self.start_time = datetime.utcnow()

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, error_msg: str) -> None:
        self.processed += 1
        self.failed += 1
        # newest last, oldest dropped
        self.errors = (self.errors + [error_msg])[-self.MAX_ERRORS:]

    def get_progress(self) -> dict[str, Any]:
        elapsed = (datetime.utcnow() - self.start_time).total_seconds()
        if self.total_items > 0:
            percent = self.processed / self.total_items * 100
        else:
            percent = 100

        remaining = 0.0
        if self.processed and elapsed > 0:
            remaining = elapsed / self.processed * (self.total_items - self.processed)

        return {
            "total": self.total_items,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "percentComplete": round(percent, 1),
            "elapsedSeconds": round(elapsed, 2),
            "estimatedRemainingSeconds": round(remaining, 2),
            "recentErrors": list(self.errors),
        }
