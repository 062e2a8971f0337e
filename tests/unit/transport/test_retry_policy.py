"""
Unit tests for retry policies and outcome classification.
"""

import random

import pytest

from tablezure.exceptions import ServiceError, TransportError
from tablezure.transport.retry import (
    ExponentialRetry,
    LinearRetry,
    LocationMode,
    NoRetry,
    RetryContext,
    StorageLocation,
    build_retry_policy,
    is_retryable,
    next_location,
)
from tablezure.core.config_manager import RetryConfig


def context(status=503, retry_count=0, mode=LocationMode.PRIMARY_ONLY,
            last_location=StorageLocation.PRIMARY, error=None):
    return RetryContext(
        current_retry_count=retry_count,
        last_result=status,
        last_error=error or ServiceError(status or 0, "failed"),
        elapsed=0.0,
        location_mode=mode,
        next_location=next_location(mode, last_location),
        last_location=last_location,
    )


class TestClassification:
    """Tests for is_retryable."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert is_retryable(context(status)) is True

    @pytest.mark.parametrize("status", [400, 403, 404, 409, 412, 501, 505])
    def test_fatal_statuses(self, status):
        assert is_retryable(context(status)) is False

    def test_transport_failure_retryable(self):
        assert is_retryable(context(None, error=TransportError("reset"))) is True

    def test_secondary_404_retryable_when_alternating(self):
        ctx = context(404, mode=LocationMode.PRIMARY_THEN_SECONDARY, last_location=StorageLocation.SECONDARY)
        assert is_retryable(ctx) is True

    def test_secondary_only_404_fatal(self):
        ctx = context(404, mode=LocationMode.SECONDARY_ONLY, last_location=StorageLocation.SECONDARY)
        assert is_retryable(ctx) is False


class TestNextLocation:
    """Tests for location alternation."""

    def test_alternation(self):
        mode = LocationMode.PRIMARY_THEN_SECONDARY
        assert next_location(mode, StorageLocation.PRIMARY) == StorageLocation.SECONDARY
        assert next_location(mode, StorageLocation.SECONDARY) == StorageLocation.PRIMARY

    def test_fixed_modes(self):
        assert next_location(LocationMode.PRIMARY_ONLY, StorageLocation.SECONDARY) == StorageLocation.PRIMARY
        assert next_location(LocationMode.SECONDARY_ONLY, StorageLocation.PRIMARY) == StorageLocation.SECONDARY

    def test_initial_location(self):
        assert LocationMode.SECONDARY_THEN_PRIMARY.initial_location() == StorageLocation.SECONDARY
        assert LocationMode.PRIMARY_THEN_SECONDARY.initial_location() == StorageLocation.PRIMARY


class TestPolicies:
    """Tests for policy decisions and delays."""

    def test_exponential_delays_without_jitter(self):
        policy = ExponentialRetry(max_attempts=5, backoff=2, max_backoff=10, jitter=0)
        assert [policy.evaluate(context(retry_count=i)).delay for i in range(4)] == [2, 4, 8, 10]

    def test_exponential_jitter_bounds(self):
        policy = ExponentialRetry(backoff=4, jitter=0.25, rng=random.Random(7))
        for _ in range(20):
            assert 3.0 <= policy.compute_delay(0) <= 5.0

    def test_linear_delay(self):
        policy = LinearRetry(max_attempts=3, backoff=1.5)
        assert policy.evaluate(context(retry_count=0)).delay == 1.5

    def test_max_attempts_counts_total(self):
        policy = LinearRetry(max_attempts=3, backoff=0)
        assert policy.evaluate(context(retry_count=1)) is not None
        assert policy.evaluate(context(retry_count=2)) is None

    def test_no_retry(self):
        assert NoRetry().evaluate(context()) is None

    def test_fatal_not_retried(self):
        assert LinearRetry(backoff=0).evaluate(context(409)) is None

    def test_secondary_404_switches_to_primary(self):
        ctx = context(404, mode=LocationMode.SECONDARY_THEN_PRIMARY, last_location=StorageLocation.SECONDARY)
        info = LinearRetry(backoff=0).evaluate(ctx)
        assert info.target_location == StorageLocation.PRIMARY
        assert info.location_mode == LocationMode.PRIMARY_ONLY

    def test_alternates_on_503(self):
        ctx = context(503, mode=LocationMode.PRIMARY_THEN_SECONDARY, last_location=StorageLocation.PRIMARY)
        info = LinearRetry(backoff=0).evaluate(ctx)
        assert info.target_location == StorageLocation.SECONDARY
        assert info.location_mode == LocationMode.PRIMARY_THEN_SECONDARY

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            LinearRetry(max_attempts=0)


class TestBuildRetryPolicy:
    """Tests for building policies from configuration."""

    def test_linear(self):
        policy = build_retry_policy(RetryConfig(policy="linear", max_attempts=2, backoff_seconds=1))
        assert isinstance(policy, LinearRetry)
        assert policy.max_attempts == 2

    def test_none(self):
        assert isinstance(build_retry_policy(RetryConfig(policy="none")), NoRetry)

    def test_default_is_exponential(self):
        assert isinstance(build_retry_policy(RetryConfig()), ExponentialRetry)
