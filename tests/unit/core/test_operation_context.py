"""
Unit tests for OperationContext bookkeeping and callbacks.
"""

from tablezure.core.operation_context import OperationContext, RequestResult
from tablezure.transport.http import HttpRequest, HttpResponse
from tablezure.transport.retry import StorageLocation


class TestOperationContext:
    """Tests for result history and callback dispatch."""

    def test_results_in_order(self):
        context = OperationContext()
        first, second = RequestResult(StorageLocation.PRIMARY), RequestResult(StorageLocation.SECONDARY)
        context.append_result(first)
        context.append_result(second)

        assert context.request_results == [first, second]
        assert context.last_result is second

    def test_history_is_a_copy(self):
        context = OperationContext()
        context.request_results.append(RequestResult(StorageLocation.PRIMARY))
        assert context.request_results == []

    def test_user_headers_copied(self):
        headers = {"x-ms-tag": "a"}
        context = OperationContext(user_headers=headers)
        headers["x-ms-tag"] = "b"
        assert context.user_headers == {"x-ms-tag": "a"}

    def test_callbacks_receive_event(self):
        context = OperationContext()
        seen = []
        context.sending_request.append(lambda event: seen.append(("sending", event.request.url)))
        context.response_received.append(lambda event: seen.append(("response", event.response.status)))
        request = HttpRequest("GET", "http://h/a/t()")
        result = RequestResult(StorageLocation.PRIMARY)

        context.fire_sending_request(request, result)
        context.fire_response_received(request, result, HttpResponse(200))

        assert seen == [("sending", "http://h/a/t()"), ("response", 200)]

    def test_retrying_event_uses_last_result(self):
        context = OperationContext()
        result = RequestResult(StorageLocation.PRIMARY, status=503)
        context.append_result(result)
        seen = []
        context.retrying.append(seen.append)

        context.fire_retrying("retry-context", "retry-info")

        assert seen[0].result is result
        assert seen[0].retry_info == "retry-info"
