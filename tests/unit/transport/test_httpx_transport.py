"""
Unit tests for the httpx transport, using httpx.MockTransport.
"""

import httpx
import pytest

from tablezure.exceptions import TransportError
from tablezure.transport.http import HttpRequest, HttpResponse, HttpxTransport


class TestHttpxTransport:
    """Tests for HttpxTransport."""

    def test_round_trip(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = request.content
            seen["version"] = request.headers["x-ms-version"]
            return httpx.Response(201, headers={"ETag": "W/\"1\""}, content=b"{}")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with HttpxTransport(client=client) as transport:
            response = transport.send(HttpRequest("POST", "http://h/a/t", {"x-ms-version": "2014-02-14"}, b"{}"))

        assert seen == {"method": "POST", "body": b"{}", "version": "2014-02-14"}
        assert response.status == 201
        assert response.header("etag") == "W/\"1\""
        assert response.body == b"{}"

    def test_connection_error_becomes_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = HttpxTransport(client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransportError) as exc_info:
            transport.send(HttpRequest("GET", "http://h/a/Tables"))
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


class TestHttpResponse:
    """Tests for HttpResponse."""

    def test_header_lookup(self):
        response = HttpResponse(200, {"Content-Type": "application/json"})
        assert response.header("content-type") == "application/json"
        assert response.header("x-missing", "d") == "d"

    def test_request_timeout_overrides_default(self):
        seen = {}

        def handler(request):
            seen["timeout"] = request.extensions["timeout"]
            return httpx.Response(200)

        transport = HttpxTransport(client=httpx.Client(transport=httpx.MockTransport(handler), timeout=30.0))
        transport.send(HttpRequest("GET", "http://h/a/Tables", timeout=2.5))
        assert seen["timeout"]["read"] == 2.5

        transport.send(HttpRequest("GET", "http://h/a/Tables"))
        assert seen["timeout"]["read"] == 30.0
