"""
Unit tests for the EDM type system.

Tests type inference, wire conversions and timestamp handling.
"""

import math
import uuid
from datetime import datetime, timezone

import pytest

from tablezure.table.types import (
    EdmType,
    EntityProperty,
    format_datetime,
    from_wire_value,
    infer_type,
    infer_wire_type,
    needs_annotation,
    parse_datetime,
    raw_as_string,
    to_wire_value,
)


class TestInferType:
    """Tests for Python value to EDM type inference."""

    def test_bool_before_int(self):
        """Test bool maps to Boolean, not Int32."""
        assert infer_type(True) == EdmType.BOOLEAN

    def test_small_int_is_int32(self):
        assert infer_type(42) == EdmType.INT32
        assert infer_type(-(2 ** 31)) == EdmType.INT32

    def test_large_int_is_int64(self):
        assert infer_type(2 ** 31) == EdmType.INT64

    def test_other_kinds(self):
        assert infer_type(1.5) == EdmType.DOUBLE
        assert infer_type("x") == EdmType.STRING
        assert infer_type(datetime(2020, 1, 1, tzinfo=timezone.utc)) == EdmType.DATETIME
        assert infer_type(uuid.uuid4()) == EdmType.GUID
        assert infer_type(b"\x00") == EdmType.BINARY

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            infer_type(object())

    def test_entity_property_of(self):
        prop = EntityProperty.of(7)
        assert prop == EntityProperty(7, EdmType.INT32)
        assert EntityProperty.of(prop) is prop


class TestDateTime:
    """Tests for timestamp formatting and parsing."""

    def test_format_naive_as_utc(self):
        assert format_datetime(datetime(2014, 3, 5, 10, 20, 30, 123456)) == "2014-03-05T10:20:30.123456Z"

    def test_parse_seven_fraction_digits(self):
        """Test the service's 7-digit precision is truncated to microseconds."""
        parsed = parse_datetime("2014-03-05T10:20:30.1234567Z")
        assert parsed == datetime(2014, 3, 5, 10, 20, 30, 123456, tzinfo=timezone.utc)

    def test_parse_offset_converts_to_utc(self):
        parsed = parse_datetime("2014-03-05T12:20:30+02:00")
        assert parsed == datetime(2014, 3, 5, 10, 20, 30, tzinfo=timezone.utc)

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_datetime("yesterday")

    @pytest.mark.parametrize("value,text", [
        (datetime(1, 1, 2, 3, 4, 5, 123000, tzinfo=timezone.utc), "0001-01-02T03:04:05.123000Z"),
        (datetime(999, 12, 31, 23, 59, 59, tzinfo=timezone.utc), "0999-12-31T23:59:59.000000Z"),
    ])
    def test_early_years_zero_padded(self, value, text):
        """Test years before 1000 keep four digits and parse back."""
        assert format_datetime(value) == text
        assert parse_datetime(format_datetime(value)) == value


class TestWireConversion:
    """Tests for to_wire_value / from_wire_value."""

    def test_int64_travels_as_string(self):
        prop = EntityProperty(2 ** 40, EdmType.INT64)
        assert to_wire_value(prop) == str(2 ** 40)
        assert needs_annotation(prop, to_wire_value(prop)) is True

    def test_int32_out_of_range(self):
        with pytest.raises(ValueError):
            to_wire_value(EntityProperty(2 ** 31, EdmType.INT32))

    def test_binary_base64(self):
        prop = EntityProperty(b"\x01\x02", EdmType.BINARY)
        assert to_wire_value(prop) == "AQI="
        assert from_wire_value("AQI=", EdmType.BINARY) == b"\x01\x02"

    def test_non_finite_doubles(self):
        """Test NaN and infinities travel as annotated strings."""
        nan = EntityProperty(math.nan, EdmType.DOUBLE)
        assert to_wire_value(nan) == "NaN"
        assert needs_annotation(nan, "NaN") is True
        assert to_wire_value(EntityProperty(-math.inf, EdmType.DOUBLE)) == "-Infinity"
        assert math.isinf(from_wire_value("Infinity", EdmType.DOUBLE))

    def test_finite_double_not_annotated(self):
        prop = EntityProperty(1.5, EdmType.DOUBLE)
        assert needs_annotation(prop, to_wire_value(prop)) is False

    def test_guid_round_trip(self):
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        assert from_wire_value(to_wire_value(EntityProperty(value, EdmType.GUID)), EdmType.GUID) == value

    def test_boolean_from_string(self):
        assert from_wire_value("true", EdmType.BOOLEAN) is True
        with pytest.raises(ValueError):
            from_wire_value("yes", EdmType.BOOLEAN)

    def test_int_rejects_float(self):
        with pytest.raises(ValueError):
            from_wire_value(1.5, EdmType.INT32)

    def test_string_from_bool(self):
        assert from_wire_value(True, EdmType.STRING) == "true"

    def test_none_passes_through(self):
        assert from_wire_value(None, EdmType.INT64) is None


class TestWireInference:
    """Tests for JSON-native inference of un-annotated values."""

    def test_infer(self):
        assert infer_wire_type(True) == EdmType.BOOLEAN
        assert infer_wire_type(5) == EdmType.INT32
        assert infer_wire_type(2 ** 40) == EdmType.DOUBLE
        assert infer_wire_type(1.0) == EdmType.DOUBLE
        assert infer_wire_type("5") == EdmType.STRING

    def test_raw_as_string(self):
        assert raw_as_string(False) == "false"
        assert raw_as_string(12) == "12"
