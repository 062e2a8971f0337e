"""
HTTP transport contract and the httpx implementation.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import httpx

from tablezure.exceptions import TransportError

logger = logging.getLogger(__name__)


@dataclass
class HttpRequest:
    """Outgoing request. ``timeout`` overrides the transport default for this request."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    timeout: Optional[float] = None


@dataclass
class HttpResponse:
    """Received response. Header lookup is case-insensitive."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


class Transport(Protocol):
    """Sends one request and returns the response, or raises TransportError."""

    def send(self, request: HttpRequest) -> HttpResponse:
        ...


class HttpxTransport:
    """
    Transport backed by ``httpx.Client``.

    Connection failures and timeouts surface as ``TransportError`` so the
    retry policy can classify them.
    """

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, request: HttpRequest) -> HttpResponse:
        try:
            response = self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body or None,
                timeout=httpx.USE_CLIENT_DEFAULT if request.timeout is None else request.timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning(f"{request.method} {request.url.split('?', 1)[0]} failed: {exc}")
            raise TransportError(str(exc), details={"method": request.method}) from exc
        return HttpResponse(response.status_code, dict(response.headers), response.content)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpxTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
