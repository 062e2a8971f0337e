"""
Retry and location policy.

A request moves through ``Start -> Attempting -> {Success, Retryable, Fatal}``.
On a retryable outcome the policy decides whether to try again, after what
delay, and against which location (primary or secondary). The
``RequestExecutor`` drives the loop for synchronous and asyncio callers.
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, Optional

from tablezure.exceptions import (
    OperationCancelledError,
    RetryExhaustedError,
    ServiceError,
    TransportError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class StorageLocation(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class LocationMode(str, Enum):
    """Which locations a request may target, in order of preference."""
    PRIMARY_ONLY = "primary_only"
    SECONDARY_ONLY = "secondary_only"
    PRIMARY_THEN_SECONDARY = "primary_then_secondary"
    SECONDARY_THEN_PRIMARY = "secondary_then_primary"

    def alternates(self) -> bool:
        return self in (LocationMode.PRIMARY_THEN_SECONDARY, LocationMode.SECONDARY_THEN_PRIMARY)

    def initial_location(self) -> StorageLocation:
        if self in (LocationMode.SECONDARY_ONLY, LocationMode.SECONDARY_THEN_PRIMARY):
            return StorageLocation.SECONDARY
        return StorageLocation.PRIMARY

    def uses_secondary(self) -> bool:
        return self != LocationMode.PRIMARY_ONLY


def next_location(mode: LocationMode, current: StorageLocation) -> StorageLocation:
    """Location the following attempt targets under ``mode``."""
    if mode == LocationMode.PRIMARY_ONLY:
        return StorageLocation.PRIMARY
    if mode == LocationMode.SECONDARY_ONLY:
        return StorageLocation.SECONDARY
    if current == StorageLocation.PRIMARY:
        return StorageLocation.SECONDARY
    return StorageLocation.PRIMARY


@dataclass(frozen=True)
class RetryContext:
    """
    State handed to a policy after a failed attempt.

    Attributes:
        current_retry_count: Retries already performed (0 after the first attempt)
        last_result: HTTP status of the last attempt, None on transport failure
        last_error: Error raised or derived from the last attempt
        elapsed: Seconds since the first attempt started
        location_mode: Mode in effect for the request
        next_location: Location the next attempt would target by default
        last_location: Location the last attempt targeted
    """
    current_retry_count: int
    last_result: Optional[int]
    last_error: Optional[BaseException]
    elapsed: float
    location_mode: LocationMode
    next_location: StorageLocation
    last_location: StorageLocation = StorageLocation.PRIMARY


@dataclass(frozen=True)
class RetryInfo:
    """Decision to retry: where, under which mode, after how long."""
    target_location: StorageLocation
    location_mode: LocationMode
    delay: float


def is_secondary_not_found(context: RetryContext) -> bool:
    return (
        context.last_result == 404
        and context.last_location == StorageLocation.SECONDARY
        and context.location_mode.alternates()
    )


def is_retryable(context: RetryContext) -> bool:
    """
    Classify the last outcome.

    Transport failures and 408/429/5xx (except 501, 505) are retryable; so is
    a 404 from the secondary while the primary may still be tried. Any other
    4xx is fatal.
    """
    if context.last_result is None:
        return isinstance(context.last_error, TransportError)
    if context.last_result in RETRYABLE_STATUSES:
        return True
    return is_secondary_not_found(context)


class RetryPolicy:
    """
    Base retry policy.

    Args:
        max_attempts: Total attempts, including the first one
        backoff: Base delay in seconds
        max_backoff: Upper bound for any single delay
    """

    def __init__(self, max_attempts: int = 4, backoff: float = 3.0, max_backoff: float = 90.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff

    def compute_delay(self, retry_count: int) -> float:
        raise NotImplementedError

    def evaluate(self, context: RetryContext) -> Optional[RetryInfo]:
        """
        Decide whether to retry.

        Returns:
            RetryInfo for the next attempt, or None to stop
        """
        if not is_retryable(context):
            return None
        if context.current_retry_count + 1 >= self.max_attempts:
            return None

        mode = context.location_mode
        target = context.next_location
        if is_secondary_not_found(context):
            # The entity may not have replicated yet; stay on the primary
            mode = LocationMode.PRIMARY_ONLY
            target = StorageLocation.PRIMARY

        delay = min(self.compute_delay(context.current_retry_count), self.max_backoff)
        return RetryInfo(target, mode, max(delay, 0.0))

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(max_attempts={self.max_attempts}, "
            f"backoff={self.backoff}, max_backoff={self.max_backoff})"
        )


class ExponentialRetry(RetryPolicy):
    """Delay grows as ``backoff * 2**retry_count`` with optional random jitter."""

    def __init__(self, max_attempts: int = 4, backoff: float = 3.0, max_backoff: float = 90.0,
                 jitter: float = 0.2, rng: Optional[random.Random] = None):
        super().__init__(max_attempts, backoff, max_backoff)
        self.jitter = jitter
        self._rng = rng or random.Random()

    def compute_delay(self, retry_count: int) -> float:
        delay = self.backoff * (2 ** retry_count)
        if self.jitter:
            delay *= 1 + self._rng.uniform(-self.jitter, self.jitter)
        return delay


class LinearRetry(RetryPolicy):
    """Constant delay between attempts."""

    def __init__(self, max_attempts: int = 4, backoff: float = 30.0, max_backoff: float = 90.0):
        super().__init__(max_attempts, backoff, max_backoff)

    def compute_delay(self, retry_count: int) -> float:
        return self.backoff


class NoRetry(RetryPolicy):
    """Never retries."""

    def __init__(self):
        super().__init__(max_attempts=1, backoff=0.0, max_backoff=0.0)

    def compute_delay(self, retry_count: int) -> float:
        return 0.0

    def evaluate(self, context: RetryContext) -> Optional[RetryInfo]:
        return None


def build_retry_policy(config: Any) -> RetryPolicy:
    """Build a policy from a ``RetryConfig``."""
    policy = getattr(config.policy, "value", config.policy)
    if policy == "none":
        return NoRetry()
    if policy == "linear":
        return LinearRetry(config.max_attempts, config.backoff_seconds, config.max_backoff_seconds)
    return ExponentialRetry(config.max_attempts, config.backoff_seconds, config.max_backoff_seconds)


# ========== Executor ==========

class RequestExecutor:
    """
    Runs one logical request under a retry policy.

    ``attempt`` is called with the target location and returns a response
    object exposing ``status``, ``headers`` and ``body``; it raises
    ``TransportError`` when nothing was received. Cancellation is observed
    between attempts only, never in the middle of one. ``on_retry`` is
    called with the retry context and decision before each retry.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy,
        location_mode: LocationMode = LocationMode.PRIMARY_ONLY,
        max_execution_time: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[RetryContext, RetryInfo], None]] = None,
    ):
        self.retry_policy = retry_policy
        self.location_mode = location_mode
        self.max_execution_time = max_execution_time
        self.clock = clock
        self.sleep = sleep
        self.on_retry = on_retry

    def execute(
        self,
        attempt: Callable[[StorageLocation], Any],
        accept_statuses: Collection[int] = (),
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """
        Drive the retry loop synchronously.

        Args:
            attempt: Sends one attempt to the given location
            accept_statuses: Non-2xx statuses to return instead of raising
            cancel_event: Set it to stop before the next attempt

        Raises:
            ServiceError: On a fatal service response
            RetryExhaustedError: When retryable failures outlast the policy
            OperationCancelledError: If cancelled between attempts
        """
        started = self.clock()
        retry_count = 0
        mode = self.location_mode
        location = mode.initial_location()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Operation was cancelled")
            try:
                response = attempt(location)
            except TransportError as exc:
                response, error = None, exc
            else:
                if _accepted(response.status, accept_statuses):
                    if retry_count:
                        logger.info(f"Request succeeded after {retry_count + 1} attempts")
                    return response
                error = ServiceError.from_response(response.status, response.headers, response.body)

            info = self._next(retry_count, response, error, started, mode, location)
            if cancel_event is not None:
                if cancel_event.wait(info.delay):
                    raise OperationCancelledError("Operation was cancelled")
            elif info.delay:
                self.sleep(info.delay)
            retry_count += 1
            mode, location = info.location_mode, info.target_location

    async def execute_async(
        self,
        attempt: Callable[[StorageLocation], Awaitable[Any]],
        accept_statuses: Collection[int] = (),
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Asyncio flavour of :meth:`execute`."""
        started = self.clock()
        retry_count = 0
        mode = self.location_mode
        location = mode.initial_location()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Operation was cancelled")
            try:
                response = await attempt(location)
            except TransportError as exc:
                response, error = None, exc
            else:
                if _accepted(response.status, accept_statuses):
                    return response
                error = ServiceError.from_response(response.status, response.headers, response.body)

            info = self._next(retry_count, response, error, started, mode, location)
            if cancel_event is not None:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=info.delay)
                except asyncio.TimeoutError:
                    pass
                else:
                    raise OperationCancelledError("Operation was cancelled")
            elif info.delay:
                await asyncio.sleep(info.delay)
            retry_count += 1
            mode, location = info.location_mode, info.target_location

    def _next(
        self,
        retry_count: int,
        response: Any,
        error: BaseException,
        started: float,
        mode: LocationMode,
        location: StorageLocation,
    ) -> RetryInfo:
        """Consult the policy; raise when the loop must stop."""
        context = RetryContext(
            current_retry_count=retry_count,
            last_result=None if response is None else response.status,
            last_error=error,
            elapsed=self.clock() - started,
            location_mode=mode,
            next_location=next_location(mode, location),
            last_location=location,
        )
        if not is_retryable(context):
            logger.debug(f"Fatal response on attempt {retry_count + 1}: {error}")
            raise error

        info = self.retry_policy.evaluate(context)
        if info is None:
            logger.error(f"Retries exhausted after {retry_count + 1} attempt(s): {error}")
            raise RetryExhaustedError(retry_count + 1, error) from error
        if self.max_execution_time is not None and context.elapsed + info.delay > self.max_execution_time:
            logger.error(f"Execution time budget of {self.max_execution_time}s spent: {error}")
            raise RetryExhaustedError(retry_count + 1, error) from error

        if self.on_retry is not None:
            self.on_retry(context, info)
        logger.warning(
            f"Attempt {retry_count + 1} failed ({error}); retrying against "
            f"{info.target_location.value} in {info.delay:.2f}s"
        )
        return info


def _accepted(status: int, accept_statuses: Collection[int]) -> bool:
    return 200 <= status < 300 or status in accept_statuses
