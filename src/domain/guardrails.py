"""Domain Guardrails - Retry Policy and Storage Quota Guard.

This module provides the guardrails that protect record persistence from
transient backend failures and from filling the device's storage. The
RetryPolicy re-runs failed backend calls with exponential backoff up to a
fixed ceiling; the QuotaGuard classifies storage usage before each save.

Security Impact:
    - Deterministic failures (validation, crypto) are never retried
    - Retry ceiling bounds the time a caller can be held by a failing backend
    - Saves are refused before the device runs out of space

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Works with the error taxonomy from ports
    - Configurable thresholds and delays
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from src.domain.ports import QuotaExceededError, StorageError, StorageEstimate

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for RetryPolicy behavior.

    Attributes:
        max_attempts: Total attempts including the first call (>= 1)
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound for any single delay
        multiplier: Backoff factor applied per attempt
    """
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    multiplier: float = 2.0


def is_retryable(error: BaseException) -> bool:
    """Return True for transient backend failures.

    A full backend stays full, so QuotaExceededError goes straight to the
    fallback path instead of being retried.
    """
    return isinstance(error, StorageError) and not isinstance(error, QuotaExceededError)


class RetryPolicy:
    """Exponential backoff retry for asynchronous backend operations.

    Key Features:
        - Exponential backoff: delay = base_delay * multiplier ** (attempt - 1)
        - Bounded: at most max_attempts calls, each delay capped at max_delay
        - Selective: only errors accepted by ``is_retryable`` are retried;
          everything else propagates on the first failure

    Example Usage:
        ```python
        policy = RetryPolicy(RetryConfig(max_attempts=3, base_delay=0.05))
        value = await policy.run(lambda: backend.get(key), operation="get")
        ```
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize RetryPolicy.

        Parameters:
            config: Retry configuration (uses defaults if None)
            sleep: Awaitable sleep function (injectable for tests)
        """
        self.config = config or RetryConfig()
        if self.config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._sleep = sleep
        self._total_calls = 0
        self._total_retries = 0
        self._total_exhausted = 0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        delay = self.config.base_delay * (self.config.multiplier ** (attempt - 1))
        return min(delay, self.config.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        retryable: Callable[[BaseException], bool] = is_retryable
    ) -> T:
        """Run ``operation`` until it succeeds or the attempt ceiling is hit.

        Parameters:
            operation: Zero-argument coroutine factory
            operation_name: Name used in log messages
            retryable: Predicate deciding whether an error is retried

        Returns:
            The operation's result

        Raises:
            The last error raised by ``operation`` once attempts are exhausted,
            or the first non-retryable error
        """
        self._total_calls += 1
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not retryable(e):
                    raise
                if attempt >= self.config.max_attempts:
                    self._total_exhausted += 1
                    logger.error(
                        f"{operation_name} failed after {attempt} attempts: {type(e).__name__}: {e}"
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{operation_name} attempt {attempt}/{self.config.max_attempts} failed "
                    f"({type(e).__name__}); retrying in {delay:.2f}s"
                )
                self._total_retries += 1
                await self._sleep(delay)
                attempt += 1

    def get_statistics(self) -> dict:
        """Get counters describing retry activity.

        Returns:
            dict: total_calls, total_retries, total_exhausted, max_attempts
        """
        return {
            'total_calls': self._total_calls,
            'total_retries': self._total_retries,
            'total_exhausted': self._total_exhausted,
            'max_attempts': self.config.max_attempts,
        }


class QuotaStatus(str, Enum):
    """Outcome of a storage quota check."""
    OK = "ok"
    WARNING = "warning"
    REJECT = "reject"
    UNKNOWN = "unknown"


@dataclass
class QuotaConfig:
    """Thresholds for the QuotaGuard.

    Attributes:
        warning_ratio: Usage ratio at which a warning is raised (save proceeds)
        reject_ratio: Usage ratio at which saves are refused
    """
    warning_ratio: float = 0.80
    reject_ratio: float = 0.95


class QuotaGuard:
    """Classifies a storage estimate against warning/reject thresholds."""

    def __init__(self, config: Optional[QuotaConfig] = None):
        self.config = config or QuotaConfig()
        if not 0 < self.config.warning_ratio <= self.config.reject_ratio <= 1:
            raise ValueError("Quota thresholds must satisfy 0 < warning_ratio <= reject_ratio <= 1")

    def classify(self, estimate: Optional[StorageEstimate]) -> QuotaStatus:
        """Return the quota status for ``estimate`` (UNKNOWN when absent)."""
        if estimate is None or estimate.quota <= 0:
            return QuotaStatus.UNKNOWN
        ratio = estimate.ratio
        if ratio >= self.config.reject_ratio:
            return QuotaStatus.REJECT
        if ratio >= self.config.warning_ratio:
            return QuotaStatus.WARNING
        return QuotaStatus.OK

    def enforce(self, estimate: Optional[StorageEstimate]) -> QuotaStatus:
        """Classify ``estimate`` and raise when the save must be refused.

        Raises:
            QuotaExceededError: If usage is at or above the reject ratio
        """
        status = self.classify(estimate)
        if status is QuotaStatus.REJECT:
            raise QuotaExceededError(
                f"Storage is {estimate.ratio * 100:.0f}% full; save rejected",
                operation="quota_check",
                details={"usage": estimate.usage, "quota": estimate.quota},
            )
        return status
