"""
Unit tests for the retry loop.

Tests the synchronous and asyncio executors with scripted attempt outcomes
and a fake clock, so no test ever sleeps.
"""

import asyncio
import threading

import pytest

from tablezure.exceptions import OperationCancelledError, RetryExhaustedError, ServiceError, TransportError
from tablezure.transport.http import HttpResponse
from tablezure.transport.retry import (
    ExponentialRetry,
    LinearRetry,
    LocationMode,
    NoRetry,
    RequestExecutor,
    StorageLocation,
)


class ScriptedAttempts:
    """Returns (or raises) queued outcomes and records target locations."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.locations = []

    def __call__(self, location):
        self.locations.append(location)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return HttpResponse(outcome)

    async def async_call(self, location):
        return self(location)


@pytest.fixture
def sleeps():
    return []


def make_executor(policy, sleeps, mode=LocationMode.PRIMARY_ONLY, max_execution_time=None, clock=None):
    return RequestExecutor(
        policy, mode, max_execution_time,
        clock=clock or (lambda: 0.0),
        sleep=sleeps.append,
    )


class TestExecute:
    """Tests for the synchronous retry loop."""

    def test_success_first_try(self, sleeps):
        attempts = ScriptedAttempts(200)
        response = make_executor(LinearRetry(3, 1), sleeps).execute(attempts)
        assert response.status == 200
        assert sleeps == []

    def test_retries_then_succeeds(self, sleeps):
        attempts = ScriptedAttempts(503, TransportError("reset"), 204)
        response = make_executor(LinearRetry(3, 2), sleeps).execute(attempts)
        assert response.status == 204
        assert sleeps == [2, 2]

    def test_exponential_sleeps(self, sleeps):
        attempts = ScriptedAttempts(500, 500, 500, 200)
        make_executor(ExponentialRetry(4, 1, jitter=0), sleeps).execute(attempts)
        assert sleeps == [1, 2, 4]

    def test_exhausted(self, sleeps):
        attempts = ScriptedAttempts(503, 503, 503)
        with pytest.raises(RetryExhaustedError) as exc_info:
            make_executor(LinearRetry(3, 0), sleeps).execute(attempts)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, ServiceError)
        assert exc_info.value.__cause__.status == 503

    def test_no_retry_raises_exhausted(self, sleeps):
        with pytest.raises(RetryExhaustedError) as exc_info:
            make_executor(NoRetry(), sleeps).execute(ScriptedAttempts(503))
        assert exc_info.value.attempts == 1

    def test_fatal_raises_service_error(self, sleeps):
        attempts = ScriptedAttempts(409, 200)
        with pytest.raises(ServiceError) as exc_info:
            make_executor(LinearRetry(3, 0), sleeps).execute(attempts)
        assert exc_info.value.status == 409
        assert len(attempts.locations) == 1

    def test_accept_statuses(self, sleeps):
        response = make_executor(LinearRetry(3, 0), sleeps).execute(ScriptedAttempts(404), accept_statuses=(404,))
        assert response.status == 404

    def test_alternates_locations(self, sleeps):
        attempts = ScriptedAttempts(503, 503, 200)
        make_executor(LinearRetry(3, 0), sleeps, LocationMode.PRIMARY_THEN_SECONDARY).execute(attempts)
        assert attempts.locations == [StorageLocation.PRIMARY, StorageLocation.SECONDARY, StorageLocation.PRIMARY]

    def test_secondary_404_pins_primary(self, sleeps):
        """Test a 404 from the secondary sends every later attempt to the primary."""
        attempts = ScriptedAttempts(404, 503, 200)
        make_executor(LinearRetry(4, 0), sleeps, LocationMode.SECONDARY_THEN_PRIMARY).execute(attempts)
        assert attempts.locations == [StorageLocation.SECONDARY, StorageLocation.PRIMARY, StorageLocation.PRIMARY]

    def test_execution_time_budget(self, sleeps):
        ticks = iter([0.0, 5.0])
        executor = make_executor(LinearRetry(5, 10), sleeps, max_execution_time=12, clock=lambda: next(ticks))
        with pytest.raises(RetryExhaustedError):
            executor.execute(ScriptedAttempts(503, 200))
        assert sleeps == []

    def test_cancelled_before_first_attempt(self, sleeps):
        cancel = threading.Event()
        cancel.set()
        attempts = ScriptedAttempts(200)
        with pytest.raises(OperationCancelledError):
            make_executor(LinearRetry(3, 0), sleeps).execute(attempts, cancel_event=cancel)
        assert attempts.locations == []

    def test_cancelled_between_attempts(self, sleeps):
        cancel = threading.Event()

        def attempt(location):
            cancel.set()
            return HttpResponse(503)

        with pytest.raises(OperationCancelledError):
            make_executor(LinearRetry(3, 0), sleeps).execute(attempt, cancel_event=cancel)

    def test_on_retry_sees_each_decision(self, sleeps):
        decisions = []
        attempts = ScriptedAttempts(503, 500, 200)
        executor = RequestExecutor(
            LinearRetry(3, 0), clock=lambda: 0.0, sleep=sleeps.append,
            on_retry=lambda context, info: decisions.append((context.last_result, info.target_location)),
        )

        assert executor.execute(attempts).status == 200
        assert decisions == [(503, StorageLocation.PRIMARY), (500, StorageLocation.PRIMARY)]

    def test_on_retry_not_called_when_exhausted(self, sleeps):
        decisions = []
        executor = RequestExecutor(NoRetry(), on_retry=lambda context, info: decisions.append(info))
        with pytest.raises(RetryExhaustedError):
            executor.execute(ScriptedAttempts(503))
        assert decisions == []


class TestExecuteAsync:
    """Tests for the asyncio retry loop."""

    async def test_retries_then_succeeds(self, sleeps):
        attempts = ScriptedAttempts(503, 200)
        response = await make_executor(LinearRetry(3, 0), sleeps).execute_async(attempts.async_call)
        assert response.status == 200
        assert len(attempts.locations) == 2

    async def test_exhausted(self, sleeps):
        attempts = ScriptedAttempts(500, 500)
        with pytest.raises(RetryExhaustedError):
            await make_executor(LinearRetry(2, 0), sleeps).execute_async(attempts.async_call)

    async def test_fatal(self, sleeps):
        with pytest.raises(ServiceError):
            await make_executor(LinearRetry(2, 0), sleeps).execute_async(ScriptedAttempts(400).async_call)

    async def test_cancelled_during_backoff(self, sleeps):
        cancel = asyncio.Event()

        async def attempt(location):
            asyncio.get_running_loop().call_soon(cancel.set)
            return HttpResponse(503)

        with pytest.raises(OperationCancelledError):
            await make_executor(LinearRetry(3, 30), sleeps).execute_async(attempt, cancel_event=cancel)
