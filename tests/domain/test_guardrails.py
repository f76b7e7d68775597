"""Unit tests for RetryPolicy and QuotaGuard."""

import pytest

from src.domain.guardrails import (
    QuotaConfig,
    QuotaGuard,
    QuotaStatus,
    RetryConfig,
    RetryPolicy,
    is_retryable,
)
from src.domain.ports import (
    BackendUnavailableError,
    CryptoError,
    QuotaExceededError,
    StorageError,
    StorageEstimate,
    ValidationError,
)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def failing(times, error):
    state = {"calls": 0}

    async def operation():
        state["calls"] += 1
        if state["calls"] <= times:
            raise error
        return "ok"

    return operation, state


class TestRetryPolicy:
    """Test suite for RetryPolicy."""

    def test_retryable_classification(self):
        assert is_retryable(StorageError("boom"))
        assert is_retryable(BackendUnavailableError("down"))
        assert not is_retryable(QuotaExceededError("full"))
        assert not is_retryable(ValidationError("bad"))
        assert not is_retryable(CryptoError("wrong key"))

    def test_delays_are_exponential_and_capped(self):
        policy = RetryPolicy(RetryConfig(max_attempts=5, base_delay=0.1, max_delay=0.3))
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(RetryConfig(max_attempts=0))

    @pytest.mark.asyncio
    async def test_recovers_from_transient_failure(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(RetryConfig(max_attempts=3, base_delay=0.1), sleep=sleep)
        operation, state = failing(2, StorageError("flaky"))

        assert await policy.run(operation, "get") == "ok"
        assert state["calls"] == 3
        assert sleep.delays == [0.1, 0.2]
        assert policy.get_statistics()["total_retries"] == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(RetryConfig(max_attempts=3), sleep=sleep)
        operation, state = failing(10, StorageError("down"))

        with pytest.raises(StorageError):
            await policy.run(operation)
        assert state["calls"] == 3
        assert len(sleep.delays) == 2
        assert policy.get_statistics()["total_exhausted"] == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(sleep=sleep)
        operation, state = failing(1, CryptoError("bad tag"))

        with pytest.raises(CryptoError):
            await policy.run(operation)
        assert state["calls"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_retryable_predicate(self):
        policy = RetryPolicy(sleep=RecordingSleep())
        operation, state = failing(1, ValueError("odd"))

        assert await policy.run(operation, retryable=lambda e: isinstance(e, ValueError)) == "ok"
        assert state["calls"] == 2


class TestQuotaGuard:
    """Test suite for QuotaGuard."""

    @pytest.mark.parametrize("usage,status", [
        (0, QuotaStatus.OK),
        (79, QuotaStatus.OK),
        (80, QuotaStatus.WARNING),
        (94, QuotaStatus.WARNING),
        (95, QuotaStatus.REJECT),
        (120, QuotaStatus.REJECT),
    ])
    def test_classify(self, usage, status):
        assert QuotaGuard().classify(StorageEstimate(usage=usage, quota=100)) is status

    def test_unknown_without_estimate(self):
        guard = QuotaGuard()
        assert guard.classify(None) is QuotaStatus.UNKNOWN
        assert guard.classify(StorageEstimate(usage=10, quota=0)) is QuotaStatus.UNKNOWN
        assert guard.enforce(None) is QuotaStatus.UNKNOWN

    def test_enforce_rejects(self):
        with pytest.raises(QuotaExceededError) as exc_info:
            QuotaGuard().enforce(StorageEstimate(usage=96, quota=100))
        assert exc_info.value.operation == "quota_check"
        assert exc_info.value.details["usage"] == 96

    def test_enforce_passes_warning_through(self):
        assert QuotaGuard().enforce(StorageEstimate(usage=85, quota=100)) is QuotaStatus.WARNING

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            QuotaGuard(QuotaConfig(warning_ratio=0.9, reject_ratio=0.8))
