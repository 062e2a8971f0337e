"""
``multipart/mixed`` framing for the ``$batch`` endpoint.

A batch request is one multipart body holding a single changeset; each
changeset part is an embedded ``application/http`` request. The response
mirrors the layout with embedded HTTP responses.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from tablezure.exceptions import HTTP_REASONS, SerializationError

CRLF = b"\r\n"

_BOUNDARY = re.compile(r"boundary=\"?([^\";\s]+)\"?", re.IGNORECASE)


@dataclass
class BatchPart:
    """Embedded HTTP request inside a changeset."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class BatchResponsePart:
    """Embedded HTTP response inside a changeset response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def reason(self) -> str:
        return HTTP_REASONS.get(self.status, {200: "OK", 201: "Created", 204: "No Content"}.get(self.status, ""))


def boundary_of(content_type: str) -> str:
    match = _BOUNDARY.search(content_type or "")
    if not match:
        raise SerializationError(f"Content-Type has no multipart boundary: {content_type!r}")
    return match.group(1)


def _header_block(headers: Dict[str, str]) -> bytes:
    return b"".join(f"{name}: {value}".encode("utf-8") + CRLF for name, value in headers.items())


def _wrap(boundary: str, parts: Sequence[bytes]) -> bytes:
    delimiter = b"--" + boundary.encode("ascii")
    out = b""
    for part in parts:
        out += delimiter + CRLF + part + CRLF
    return out + delimiter + b"--" + CRLF


def _http_part(first_line: str, headers: Dict[str, str], body: bytes, content_id: Optional[int]) -> bytes:
    envelope = {"Content-Type": "application/http", "Content-Transfer-Encoding": "binary"}
    inner = dict(headers)
    if content_id is not None:
        inner = {"Content-ID": str(content_id), **inner}
    if body:
        inner["Content-Length"] = str(len(body))
    message = first_line.encode("utf-8") + CRLF + _header_block(inner) + CRLF + body
    return _header_block(envelope) + CRLF + message


def encode_batch_request(
    parts: Sequence[BatchPart],
    batch_boundary: Optional[str] = None,
    changeset_boundary: Optional[str] = None,
) -> Tuple[str, bytes]:
    """
    Frame request parts as a ``$batch`` body.

    Returns:
        Tuple of (Content-Type header value, body)
    """
    batch_boundary = batch_boundary or f"batch_{uuid.uuid4()}"
    changeset_boundary = changeset_boundary or f"changeset_{uuid.uuid4()}"
    changeset = _wrap(
        changeset_boundary,
        [
            _http_part(f"{part.method} {part.url} HTTP/1.1", part.headers, part.body, index + 1)
            for index, part in enumerate(parts)
        ],
    )
    outer = _header_block({"Content-Type": f"multipart/mixed; boundary={changeset_boundary}"}) + CRLF + changeset
    return f"multipart/mixed; boundary={batch_boundary}", _wrap(batch_boundary, [outer])


def encode_batch_response(
    parts: Sequence[BatchResponsePart],
    batch_boundary: Optional[str] = None,
    changeset_boundary: Optional[str] = None,
) -> Tuple[str, bytes]:
    """Frame response parts as a ``$batch`` response body."""
    batch_boundary = batch_boundary or f"batchresponse_{uuid.uuid4()}"
    changeset_boundary = changeset_boundary or f"changesetresponse_{uuid.uuid4()}"
    changeset = _wrap(
        changeset_boundary,
        [
            _http_part(f"HTTP/1.1 {part.status} {part.reason}", part.headers, part.body, None)
            for part in parts
        ],
    )
    outer = _header_block({"Content-Type": f"multipart/mixed; boundary={changeset_boundary}"}) + CRLF + changeset
    return f"multipart/mixed; boundary={batch_boundary}", _wrap(batch_boundary, [outer])


# ========== Parsing ==========

def _split_parts(body: bytes, boundary: str) -> List[bytes]:
    delimiter = b"--" + boundary.encode("ascii")
    chunks = body.split(delimiter)
    parts = []
    # chunks[0] is the preamble; a chunk starting with "--" is the epilogue
    for chunk in chunks[1:]:
        if chunk.startswith(b"--"):
            break
        if chunk.startswith(CRLF):
            chunk = chunk[2:]
        if chunk.endswith(CRLF):
            chunk = chunk[:-2]
        parts.append(chunk)
    return parts


def _parse_headers(block: bytes) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for line in block.split(CRLF):
        if not line:
            continue
        name, sep, value = line.decode("utf-8").partition(":")
        if not sep:
            raise SerializationError(f"Malformed header line in batch part: {line!r}")
        headers[name.strip()] = value.strip()
    return headers


def _split_message(data: bytes) -> Tuple[bytes, bytes]:
    head, sep, rest = data.partition(CRLF + CRLF)
    if not sep:
        return data, b""
    return head, rest


def _http_messages(body: bytes, content_type: str) -> List[Tuple[str, Dict[str, str], bytes]]:
    messages = []
    for part in _split_parts(body, boundary_of(content_type)):
        head, content = _split_message(part)
        part_headers = _parse_headers(head)
        part_type = {k.lower(): v for k, v in part_headers.items()}.get("content-type", "")
        if part_type.lower().startswith("multipart/mixed"):
            messages.extend(_http_messages(content, part_type))
            continue
        message_head, message_body = _split_message(content)
        first_line, _, header_lines = message_head.partition(CRLF)
        messages.append((first_line.decode("utf-8"), _parse_headers(header_lines), message_body))
    return messages


def decode_batch_request(content_type: str, body: bytes) -> List[BatchPart]:
    """Parse a ``$batch`` request body into its embedded requests."""
    parts = []
    for first_line, headers, message_body in _http_messages(body, content_type):
        pieces = first_line.split(" ")
        if len(pieces) < 2:
            raise SerializationError(f"Malformed request line in batch part: {first_line!r}")
        parts.append(BatchPart(pieces[0].upper(), pieces[1], headers, message_body))
    return parts


def decode_batch_response(content_type: str, body: bytes) -> List[BatchResponsePart]:
    """Parse a ``$batch`` response body into its embedded responses."""
    parts = []
    for first_line, headers, message_body in _http_messages(body, content_type):
        pieces = first_line.split(" ", 2)
        if len(pieces) < 2 or not pieces[1].isdigit():
            raise SerializationError(f"Malformed status line in batch part: {first_line!r}")
        parts.append(BatchResponsePart(int(pieces[1]), headers, message_body))
    return parts
