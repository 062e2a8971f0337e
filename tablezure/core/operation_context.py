"""
Per-operation tracking and hooks.

An ``OperationContext`` travels with one logical operation. It records a
``RequestResult`` for every attempt, adds caller headers to each request,
and notifies registered callbacks as requests are sent, answered and
retried.

Example:
    context = OperationContext(user_headers={"x-ms-custom": "tag"})
    context.sending_request.append(lambda event: print(event.request.url))
    table.execute(TableOperation.retrieve("pk", "rk"), operation_context=context)
    print(context.last_result.status)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RequestResult:
    """
    Outcome of one attempt.

    Attributes:
        location: Location the attempt targeted
        start_time: When the request was handed to the transport
        end_time: When the response (or failure) came back
        status: HTTP status, None when nothing was received
        service_request_id: ``x-ms-request-id`` of the response
        etag: ``ETag`` of the response, if any
        error: Transport failure, or the service error of a non-2xx response
    """
    location: Any
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    status: Optional[int] = None
    service_request_id: Optional[str] = None
    etag: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass
class RequestEvent:
    """Argument of sending and response callbacks."""
    context: "OperationContext"
    request: Any
    result: RequestResult
    response: Any = None


@dataclass
class RetryingEvent:
    """Argument of retrying callbacks: the failed attempt and the policy's decision."""
    context: "OperationContext"
    result: Optional[RequestResult]
    retry_context: Any
    retry_info: Any


class OperationContext:
    """
    Request history, user headers and event callbacks for one operation.

    Callbacks are plain callables appended to ``sending_request``,
    ``response_received`` or ``retrying``. A callback that raises aborts the
    operation with that exception.

    Args:
        client_request_id: Overrides the generated ``x-ms-client-request-id``
        user_headers: Extra headers sent (and signed) with every request
    """

    def __init__(self, client_request_id: Optional[str] = None, user_headers: Optional[Dict[str, str]] = None):
        self.client_request_id = client_request_id
        self.user_headers: Dict[str, str] = dict(user_headers or {})
        self.sending_request: List[Callable[[RequestEvent], None]] = []
        self.response_received: List[Callable[[RequestEvent], None]] = []
        self.retrying: List[Callable[[RetryingEvent], None]] = []
        self._results: List[RequestResult] = []
        self._lock = threading.Lock()

    @property
    def request_results(self) -> List[RequestResult]:
        with self._lock:
            return list(self._results)

    @property
    def last_result(self) -> Optional[RequestResult]:
        with self._lock:
            return self._results[-1] if self._results else None

    def append_result(self, result: RequestResult) -> None:
        with self._lock:
            self._results.append(result)

    def fire_sending_request(self, request: Any, result: RequestResult) -> None:
        self._fire(self.sending_request, RequestEvent(self, request, result))

    def fire_response_received(self, request: Any, result: RequestResult, response: Any) -> None:
        self._fire(self.response_received, RequestEvent(self, request, result, response))

    def fire_retrying(self, retry_context: Any, retry_info: Any) -> None:
        self._fire(self.retrying, RetryingEvent(self, self.last_result, retry_context, retry_info))

    @staticmethod
    def _fire(handlers: List[Callable[[Any], None]], event: Any) -> None:
        for handler in list(handlers):
            handler(event)

    def __repr__(self) -> str:
        return f"OperationContext(client_request_id={self.client_request_id!r}, requests={len(self._results)})"
