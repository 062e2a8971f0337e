"""
OData ``$filter`` expression builder.

Filters are plain strings. Operands are rendered as OData literals when the
condition is built, so a filter is always safe to send as-is.
"""

import math
import uuid
from datetime import datetime
from typing import Any, Optional

from tablezure.table.types import INT32_MAX, INT32_MIN, EdmType, EntityProperty, format_datetime


class QueryComparisons:
    """Comparison operators of the filter grammar."""
    EQUAL = "eq"
    NOT_EQUAL = "ne"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "ge"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "le"

    ALL = frozenset({EQUAL, NOT_EQUAL, GREATER_THAN, GREATER_THAN_OR_EQUAL, LESS_THAN, LESS_THAN_OR_EQUAL})


class TableOperators:
    """Boolean operators used to combine filters."""
    AND = "and"
    OR = "or"
    NOT = "not"


def format_literal(value: Any, edm_type: Optional[EdmType] = None) -> str:
    """
    Render a value as an OData literal.

    Examples:
        >>> format_literal("O'Brien")
        "'O''Brien'"
        >>> format_literal(123, EdmType.INT64)
        '123L'
        >>> format_literal(b"\\x0a\\x0b")
        "X'0a0b'"
    """
    if isinstance(value, EntityProperty):
        value, edm_type = value.value, value.edm_type
    if edm_type is None:
        if isinstance(value, int) and not isinstance(value, bool) and not INT32_MIN <= value <= INT32_MAX:
            edm_type = EdmType.INT64
        elif isinstance(value, bool):
            edm_type = EdmType.BOOLEAN
        elif isinstance(value, int):
            edm_type = EdmType.INT32
        elif isinstance(value, float):
            edm_type = EdmType.DOUBLE
        elif isinstance(value, datetime):
            edm_type = EdmType.DATETIME
        elif isinstance(value, uuid.UUID):
            edm_type = EdmType.GUID
        elif isinstance(value, (bytes, bytearray)):
            edm_type = EdmType.BINARY
        else:
            edm_type = EdmType.STRING

    if edm_type == EdmType.STRING:
        return "'" + str(value).replace("'", "''") + "'"
    if edm_type == EdmType.BOOLEAN:
        return "true" if value else "false"
    if edm_type == EdmType.INT32:
        return str(int(value))
    if edm_type == EdmType.INT64:
        return f"{int(value)}L"
    if edm_type == EdmType.DOUBLE:
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            raise ValueError(f"{number} has no OData literal")
        text = repr(number)
        return text if any(c in text for c in ".eE") else text + ".0"
    if edm_type == EdmType.DATETIME:
        return f"datetime'{format_datetime(value)}'"
    if edm_type == EdmType.GUID:
        return f"guid'{value}'"
    if edm_type == EdmType.BINARY:
        return f"X'{bytes(value).hex()}'"
    raise ValueError(f"Unsupported EDM type: {edm_type}")


def generate_filter_condition(
    property_name: str,
    operator: str,
    value: Any,
    edm_type: Optional[EdmType] = None,
) -> str:
    """
    Build ``<property> <operator> <literal>``.

    Raises:
        ValueError: If the operator is not a comparison operator
    """
    if operator not in QueryComparisons.ALL:
        raise ValueError(f"Unknown comparison operator: {operator}")
    return f"{property_name} {operator} {format_literal(value, edm_type)}"


def generate_filter(
    property_name: str,
    operator: str,
    value: Any,
    edm_type: Optional[EdmType] = None,
) -> str:
    """Parenthesized form of :func:`generate_filter_condition`."""
    return f"({generate_filter_condition(property_name, operator, value, edm_type)})"


def combine_filters(filter_a: str, operator: str, filter_b: str) -> str:
    """Combine two filters as ``(a) <op> (b)``."""
    if operator not in (TableOperators.AND, TableOperators.OR):
        raise ValueError(f"Unknown boolean operator: {operator}")
    return f"({filter_a}) {operator} ({filter_b})"


def negate_filter(filter_a: str) -> str:
    return f"{TableOperators.NOT} ({filter_a})"
