"""
OData EDM (Entity Data Model) type system for Azure Table Storage entities.

This module defines the property kinds a table entity can hold, the typed
value container used by dynamic entities, and the conversions between
in-memory values and their JSON wire representation.

References:
    - OData v3 Primitive Data Types
    - Azure Table Storage Entity Properties
"""

from __future__ import annotations

import base64
import binascii
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


class EdmType(str, Enum):
    """
    Entity Data Model primitive types.

    Represents the complete set of property types supported by Azure Table
    Storage.
    """
    STRING = "Edm.String"
    BINARY = "Edm.Binary"
    BOOLEAN = "Edm.Boolean"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"
    DOUBLE = "Edm.Double"
    DATETIME = "Edm.DateTime"
    GUID = "Edm.Guid"

    def is_numeric(self) -> bool:
        """Check if type is numeric (Int32, Int64, Double)."""
        return self in (EdmType.INT32, EdmType.INT64, EdmType.DOUBLE)

    def requires_annotation(self) -> bool:
        """
        Check whether a JSON payload must carry an ``@odata.type`` annotation.

        String, Boolean, Int32 and Double map onto JSON-native values and are
        inferred when the annotation is absent.
        """
        return self in (EdmType.INT64, EdmType.DATETIME, EdmType.GUID, EdmType.BINARY)


@dataclass(frozen=True)
class EntityProperty:
    """
    Value with its EDM type.

    Immutable container for a property value and its kind. The kind never
    depends on the payload format the value travelled in.
    """
    value: Any
    edm_type: EdmType

    def __repr__(self) -> str:
        return f"EntityProperty({self.value!r}, {self.edm_type.value})"

    @classmethod
    def of(cls, value: Any) -> "EntityProperty":
        """Wrap a plain Python value, inferring its EDM type."""
        if isinstance(value, EntityProperty):
            return value
        return cls(value, infer_type(value))


def infer_type(value: Any) -> EdmType:
    """
    Infer EDM type from Python value.

    Args:
        value: Python value

    Returns:
        Inferred EDM type

    Raises:
        TypeError: If the value has no EDM counterpart
    """
    if isinstance(value, bool):
        # Must check bool before int (bool is subclass of int)
        return EdmType.BOOLEAN
    elif isinstance(value, int):
        # Use Int32 for small integers, Int64 for large
        if INT32_MIN <= value <= INT32_MAX:
            return EdmType.INT32
        return EdmType.INT64
    elif isinstance(value, float):
        return EdmType.DOUBLE
    elif isinstance(value, str):
        return EdmType.STRING
    elif isinstance(value, datetime):
        return EdmType.DATETIME
    elif isinstance(value, uuid.UUID):
        return EdmType.GUID
    elif isinstance(value, (bytes, bytearray)):
        return EdmType.BINARY
    raise TypeError(f"Cannot map value of type {type(value).__name__} to an EDM type")


# ========== DateTime ==========

_DATETIME_PATTERN = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2})?)"
    r"(?:\.(?P<fraction>\d{1,7}))?"
    r"(?P<zone>Z|[+-]\d{2}:\d{2})?$"
)


def format_datetime(value: datetime) -> str:
    """
    Format a datetime as an ISO-8601 UTC string with microsecond precision.

    Naive datetimes are treated as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    # strftime does not zero-pad years before 1000 on every platform
    return (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}T"
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}.{value.microsecond:06d}Z"
    )


def parse_datetime(text: str) -> datetime:
    """
    Parse an ISO-8601 timestamp as emitted by the Table service.

    Accepts 0-7 fractional digits (the service emits 7); digits beyond
    microseconds are truncated.

    Raises:
        ValueError: If the text is not a timestamp
    """
    match = _DATETIME_PATTERN.match(text.strip())
    if not match:
        raise ValueError(f"Invalid date string: {text}")
    base = match.group("base")
    if base.count(":") == 1:
        base += ":00"
    fraction = (match.group("fraction") or "")[:6].ljust(6, "0")
    zone = match.group("zone") or "Z"
    if zone == "Z":
        zone = "+00:00"
    parsed = datetime.fromisoformat(f"{base}.{fraction}{zone}")
    return parsed.astimezone(timezone.utc)


# ========== Wire conversions ==========

def to_wire_value(prop: EntityProperty) -> Any:
    """
    Convert a typed value to its JSON representation.

    Int64 travels as a string to avoid precision loss, Binary as base64,
    non-finite doubles as the OData names ``NaN``, ``Infinity``, ``-Infinity``.

    Raises:
        ValueError: If the value is out of range for its type
    """
    value = prop.value
    edm_type = prop.edm_type
    if edm_type == EdmType.STRING:
        return str(value)
    if edm_type == EdmType.BOOLEAN:
        return bool(value)
    if edm_type == EdmType.INT32:
        number = int(value)
        if not INT32_MIN <= number <= INT32_MAX:
            raise ValueError(f"Value {number} is out of range for Edm.Int32")
        return number
    if edm_type == EdmType.INT64:
        number = int(value)
        if not INT64_MIN <= number <= INT64_MAX:
            raise ValueError(f"Value {number} is out of range for Edm.Int64")
        return str(number)
    if edm_type == EdmType.DOUBLE:
        number = float(value)
        if math.isnan(number):
            return "NaN"
        if math.isinf(number):
            return "Infinity" if number > 0 else "-Infinity"
        return number
    if edm_type == EdmType.DATETIME:
        return format_datetime(value)
    if edm_type == EdmType.GUID:
        return str(value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)))
    if edm_type == EdmType.BINARY:
        return base64.b64encode(bytes(value)).decode("ascii")
    raise ValueError(f"Unsupported EDM type: {edm_type}")


def needs_annotation(prop: EntityProperty, wire_value: Any) -> bool:
    """Check if a serialized property must carry its ``@odata.type``."""
    if prop.edm_type.requires_annotation():
        return True
    # Non-finite doubles travel as strings
    return prop.edm_type == EdmType.DOUBLE and isinstance(wire_value, str)


def from_wire_value(raw: Any, edm_type: EdmType) -> Any:
    """
    Parse a JSON value as the given EDM type.

    Raises:
        ValueError: If the value cannot be parsed as that type
    """
    if raw is None:
        return None
    if edm_type == EdmType.STRING:
        if isinstance(raw, bool):
            return "true" if raw else "false"
        return raw if isinstance(raw, str) else str(raw)
    if edm_type == EdmType.BOOLEAN:
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.lower() in ("true", "false"):
            return raw.lower() == "true"
        raise ValueError(f"{raw!r} is not a boolean")
    if edm_type in (EdmType.INT32, EdmType.INT64):
        if isinstance(raw, bool) or isinstance(raw, float):
            raise ValueError(f"{raw!r} is not an integer")
        number = int(raw)
        low, high = (INT32_MIN, INT32_MAX) if edm_type == EdmType.INT32 else (INT64_MIN, INT64_MAX)
        if not low <= number <= high:
            raise ValueError(f"{number} is out of range for {edm_type.value}")
        return number
    if edm_type == EdmType.DOUBLE:
        if isinstance(raw, bool):
            raise ValueError(f"{raw!r} is not a double")
        if isinstance(raw, str):
            special = {"NaN": math.nan, "Infinity": math.inf, "INF": math.inf,
                       "-Infinity": -math.inf, "-INF": -math.inf}
            if raw in special:
                return special[raw]
        return float(raw)
    if edm_type == EdmType.DATETIME:
        if not isinstance(raw, str):
            raise ValueError(f"{raw!r} is not a timestamp")
        return parse_datetime(raw)
    if edm_type == EdmType.GUID:
        if not isinstance(raw, str):
            raise ValueError(f"{raw!r} is not a GUID")
        return uuid.UUID(raw)
    if edm_type == EdmType.BINARY:
        if not isinstance(raw, str):
            raise ValueError(f"{raw!r} is not base64")
        try:
            return base64.b64decode(raw, validate=True)
        except binascii.Error as exc:
            raise ValueError(str(exc)) from exc
    raise ValueError(f"Unsupported EDM type: {edm_type}")


def infer_wire_type(raw: Any) -> EdmType:
    """
    Infer the kind of an un-annotated JSON value.

    JSON boolean is Boolean, an integral number within 32-bit range is Int32,
    any other number is Double, anything else is String.
    """
    if isinstance(raw, bool):
        return EdmType.BOOLEAN
    if isinstance(raw, int):
        return EdmType.INT32 if INT32_MIN <= raw <= INT32_MAX else EdmType.DOUBLE
    if isinstance(raw, float):
        return EdmType.DOUBLE
    return EdmType.STRING


def raw_as_string(raw: Any) -> str:
    """Render a JSON scalar the way it appeared on the wire."""
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(raw)


def coerce_property(value: Any, edm_type: Optional[EdmType] = None) -> EntityProperty:
    """Build an EntityProperty, honoring an explicit type when given."""
    if isinstance(value, EntityProperty):
        return value
    if edm_type is None:
        return EntityProperty.of(value)
    return EntityProperty(value, edm_type)
