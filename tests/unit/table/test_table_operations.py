"""
Unit tests for single-entity operations.

Tests request rendering and response handling without a transport.
"""

import json

import pytest

from tablezure.exceptions import KeyValidationError, ValidationError
from tablezure.table.codec import TablePayloadFormat, etag_from_timestamp, timestamp_from_etag
from tablezure.table.models import DynamicTableEntity
from tablezure.table.operations import TableOperation, TableOperationType

MINIMAL = TablePayloadFormat.JSON_MINIMAL_METADATA
ETAG = etag_from_timestamp("2024-01-01T00:00:00.0000010Z")


@pytest.fixture
def entity():
    """Entity with keys that need escaping."""
    return DynamicTableEntity(PartitionKey="a b", RowKey="it's", properties={"Age": 3})


class TestFactories:
    """Tests for operation factory validation."""

    def test_insert_requires_keys(self):
        with pytest.raises(ValidationError):
            TableOperation.insert(DynamicTableEntity(PartitionKey="p"))

    @pytest.mark.parametrize("factory", [TableOperation.replace, TableOperation.merge, TableOperation.delete])
    def test_conditional_ops_require_etag(self, entity, factory):
        with pytest.raises(ValidationError):
            factory(entity)

    def test_wildcard_etag_accepted(self, entity):
        entity.etag = "*"
        assert TableOperation.delete(entity).operation_type == TableOperationType.DELETE

    def test_upserts_do_not_need_etag(self, entity):
        TableOperation.insert_or_merge(entity)
        TableOperation.insert_or_replace(entity)

    def test_retrieve_validates_keys(self):
        with pytest.raises(KeyValidationError):
            TableOperation.retrieve("p", "a?b")


class TestBuildRequest:
    """Tests for request rendering."""

    def test_insert(self, entity):
        request = TableOperation.insert(entity).build_request("people", MINIMAL)
        assert request.method == "POST"
        assert request.path == "people"
        assert request.headers["Prefer"] == "return-no-content"
        assert request.headers["Accept"] == MINIMAL.value
        assert json.loads(request.body)["Age"] == 3

    def test_insert_echo(self, entity):
        request = TableOperation.insert(entity, echo_content=True).build_request("people", MINIMAL)
        assert request.headers["Prefer"] == "return-content"

    def test_replace_escapes_keys_and_sends_etag(self, entity):
        entity.etag = ETAG
        request = TableOperation.replace(entity).build_request("people", MINIMAL)
        assert request.method == "PUT"
        assert request.path == "people(PartitionKey='a%20b',RowKey='it%27%27s')"
        assert request.headers["If-Match"] == ETAG

    def test_insert_or_merge_has_no_if_match(self, entity):
        request = TableOperation.insert_or_merge(entity).build_request("people", MINIMAL)
        assert request.method == "MERGE"
        assert "If-Match" not in request.headers

    def test_delete_has_no_body(self, entity):
        entity.etag = "*"
        request = TableOperation.delete(entity).build_request("people", MINIMAL)
        assert request.body == b""
        assert "Content-Type" not in request.headers

    def test_retrieve(self):
        request = TableOperation.retrieve("p", "r").build_request("people", TablePayloadFormat.JSON_NO_METADATA)
        assert request.method == "GET"
        assert request.headers["Accept"] == "application/json;odata=nometadata"


class TestParseResponse:
    """Tests for reading service answers."""

    def test_write_refreshes_etag_and_timestamp(self, entity):
        operation = TableOperation.insert(entity)
        result = operation.parse_response(204, {"ETag": ETAG}, b"", MINIMAL)
        assert result.http_status_code == 204
        assert result.etag == ETAG
        assert entity.etag == ETAG
        assert entity.Timestamp == timestamp_from_etag(ETAG)

    def test_retrieve_not_found(self):
        result = TableOperation.retrieve("p", "r").parse_response(404, {}, b"", MINIMAL)
        assert result.result is None
        assert result.http_status_code == 404

    def test_retrieve_uses_header_etag(self):
        body = json.dumps({"PartitionKey": "p", "RowKey": "r", "Age": 1}).encode()
        result = TableOperation.retrieve("p", "r").parse_response(200, {"etag": ETAG}, body, MINIMAL)
        assert result.result["Age"] == 1
        assert result.etag == ETAG

    def test_delete_returns_entity(self, entity):
        entity.etag = "*"
        result = TableOperation.delete(entity).parse_response(204, {}, b"", MINIMAL)
        assert result.result is entity
