"""
PartitionKey / RowKey validation and URI escaping.

Keys may hold arbitrary Unicode except a handful of characters the service
reserves. Keys that end up in a request path are percent-encoded as a URI
path segment so a literal ``%`` survives the round trip.
"""

import re
from typing import Tuple
from urllib.parse import quote, unquote

from tablezure.exceptions import KeyValidationError

FORBIDDEN_KEY_CHARACTERS = frozenset("/\\#?")

_CONTROL_CHARACTERS = re.compile("[\u0000-\u001f\u007f-\u009f]")

_ENTITY_PATH = re.compile(
    r"^(?P<table>[^(/]+)\(PartitionKey='(?P<pk>(?:[^']|'')*)',RowKey='(?P<rk>(?:[^']|'')*)'\)$"
)


def validate_key(value: str, key_name: str = "PartitionKey") -> str:
    """
    Validate a PartitionKey or RowKey.

    The empty string and all-whitespace strings are valid keys.

    Args:
        value: Key to validate
        key_name: Name used in the error message

    Returns:
        The key, unchanged

    Raises:
        KeyValidationError: If the key is not a string or holds a forbidden character
    """
    if not isinstance(value, str):
        raise KeyValidationError(key_name, str(value), "keys must be strings")

    for char in value:
        if char in FORBIDDEN_KEY_CHARACTERS:
            raise KeyValidationError(key_name, value, f"character {char!r} is not allowed")

    control = _CONTROL_CHARACTERS.search(value)
    if control:
        raise KeyValidationError(
            key_name, value, f"control character U+{ord(control.group()):04X} is not allowed"
        )

    return value


def escape_path_segment(text: str) -> str:
    """
    Percent-encode text for use inside a single URI path segment.

    Only RFC 3986 unreserved characters are left as-is; everything else,
    including ``%``, space and ``'``, is UTF-8 percent-encoded.
    """
    return quote(text, safe="")


def quote_key_literal(key: str) -> str:
    """Quote a key as an OData string literal, doubling inner single quotes."""
    return "'" + key.replace("'", "''") + "'"


def entity_path(table_name: str, partition_key: str, row_key: str) -> str:
    """
    Build the escaped entity resource path.

    Example:
        >>> entity_path("mytable", "a b", "it's")
        "mytable(PartitionKey='a%20b',RowKey='it%27%27s')"

    The structural characters ``(``, ``=``, ``,`` and the quotes framing the
    literals stay unescaped; the key text inside the literals is escaped.
    """
    pk = escape_path_segment(partition_key.replace("'", "''"))
    rk = escape_path_segment(row_key.replace("'", "''"))
    return f"{table_name}(PartitionKey='{pk}',RowKey='{rk}')"


def parse_entity_path(segment: str) -> Tuple[str, str, str]:
    """
    Parse an entity resource path back into (table, partition key, row key).

    The segment is percent-decoded exactly once, so ``%2525`` on the wire
    yields the literal key text ``%25``.

    Raises:
        ValueError: If the segment is not an entity path
    """
    match = _ENTITY_PATH.match(segment)
    if not match:
        raise ValueError(f"Not an entity path: {segment}")
    pk = unquote(match.group("pk"), errors="strict").replace("''", "'")
    rk = unquote(match.group("rk"), errors="strict").replace("''", "'")
    return match.group("table"), pk, rk
