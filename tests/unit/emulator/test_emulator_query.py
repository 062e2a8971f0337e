"""
Unit tests for the emulated service's OData filter engine.
"""

import uuid
from datetime import datetime, timezone

import pytest

from tablezure.emulator.query import ODataFilter, ODataParseError, ODataQuery
from tablezure.table.filters import QueryComparisons, TableOperators, combine_filters, generate_filter_condition
from tablezure.table.types import EdmType


@pytest.fixture
def entity():
    """Entity as the service sees it: plain values keyed by property name."""
    return {
        "PartitionKey": "pk",
        "RowKey": "it's",
        "Name": "漢字",
        "Age": 30,
        "Big": 2 ** 40,
        "Ratio": 0.5,
        "Active": True,
        "Born": datetime(1990, 1, 1, tzinfo=timezone.utc),
        "Id": uuid.UUID(int=5),
        "Blob": b"\x0a\x0b",
    }


def matches(expr, entity):
    return ODataFilter(expr).evaluate(entity)


class TestComparisons:
    """Tests for comparison evaluation."""

    @pytest.mark.parametrize("expr", [
        "PartitionKey eq 'pk'",
        "RowKey eq 'it''s'",
        "Name eq '漢字'",
        "Age gt 29",
        "Age le 30",
        "Big eq 1099511627776L",
        "Ratio lt 1.0",
        "Active eq true",
        "Born eq datetime'1990-01-01T00:00:00.000000Z'",
        "Id eq guid'00000000-0000-0000-0000-000000000005'",
        "Blob eq X'0a0b'",
    ])
    def test_true(self, entity, expr):
        assert matches(expr, entity) is True

    @pytest.mark.parametrize("expr", [
        "Age ne 30",
        "Missing eq 'x'",
        "Missing ne 'x'",
        "Active eq 1",
        "Name gt 5",
    ])
    def test_false(self, entity, expr):
        assert matches(expr, entity) is False

    def test_builder_output_is_understood(self, entity):
        """Test filters produced by the client builder evaluate as intended."""
        expr = combine_filters(
            generate_filter_condition("Big", QueryComparisons.GREATER_THAN_OR_EQUAL, 2 ** 40, EdmType.INT64),
            TableOperators.AND,
            generate_filter_condition("Born", QueryComparisons.LESS_THAN, datetime(2000, 1, 1, tzinfo=timezone.utc)),
        )
        assert matches(expr, entity) is True


class TestLogic:
    """Tests for and / or / not and grouping."""

    def test_and_or_precedence(self, entity):
        assert matches("Age eq 1 and Age eq 2 or Age eq 30", entity) is True
        assert matches("Age eq 1 and (Age eq 2 or Age eq 30)", entity) is False

    def test_not(self, entity):
        assert matches("not (Age eq 1)", entity) is True
        assert matches("not Active eq true", entity) is False

    def test_empty_filter(self, entity):
        assert matches("   ", entity) is True


class TestParseErrors:
    """Tests for malformed expressions."""

    @pytest.mark.parametrize("expr", [
        "Age eq",
        "Age like 3",
        "(Age eq 3",
        "Age eq 3 Age",
        "Age eq 3 & Name eq 'x'",
        "Id eq guid'nope'",
    ])
    def test_rejected(self, entity, expr):
        with pytest.raises(ODataParseError):
            matches(expr, entity)


class TestODataQuery:
    """Tests for $filter / $select / $top handling."""

    def test_filter_parsed_eagerly(self):
        with pytest.raises(ODataParseError):
            ODataQuery(filter_expr="Age eq")

    def test_project_keeps_system_properties(self):
        query = ODataQuery(select="Name, Age")
        projected = query.project({"PartitionKey": "p", "RowKey": "r", "Timestamp": "t", "Name": "n", "Other": 1})
        assert projected == {"PartitionKey": "p", "RowKey": "r", "Timestamp": "t", "Name": "n"}

    def test_no_filter_matches_all(self):
        assert ODataQuery().matches({}) is True
