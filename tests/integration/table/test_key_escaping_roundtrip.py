"""
Integration tests for keys that need escaping on the wire, through single
operations, batches and filters.
"""

import pytest

from tablezure import CloudTableClient, StorageCredentialsAccountAndKey
from tablezure.emulator import DEVSTORE_ACCOUNT_KEY, DEVSTORE_ACCOUNT_NAME, InMemoryTableService
from tablezure.table import (
    DynamicTableEntity,
    QueryComparisons,
    TableBatchOperation,
    TableOperation,
    TableQuery,
    generate_filter_condition,
)

EMULATOR_URL = "http://127.0.0.1:10002/devstoreaccount1"

KEY_MATRIX = [
    "",
    " ",
    "!$'\"()*+,;=",
    "漢字キー",
    "%25",
    "%",
    "it's",
    "''",
    "emoji 🙂",
]


@pytest.fixture
def service():
    return InMemoryTableService()


@pytest.fixture
def table(service):
    credentials = StorageCredentialsAccountAndKey(DEVSTORE_ACCOUNT_NAME, DEVSTORE_ACCOUNT_KEY)
    client = CloudTableClient(EMULATOR_URL, credentials, transport=service)
    table = client.get_table_reference("escaping")
    table.create()
    return table


class TestSingleOperations:
    """Tests for escaped keys in point operations."""

    @pytest.mark.parametrize("key", KEY_MATRIX)
    def test_insert_retrieve_update_delete(self, table, key):
        entity = DynamicTableEntity(PartitionKey=key, RowKey=key, properties={"Value": "v1"})
        table.execute(TableOperation.insert(entity))

        fetched = table.execute(TableOperation.retrieve(key, key)).result
        assert (fetched.PartitionKey, fetched.RowKey) == (key, key)

        fetched["Value"] = "v2"
        table.execute(TableOperation.replace(fetched))
        assert table.execute(TableOperation.retrieve(key, key)).result["Value"] == "v2"

        table.execute(TableOperation.delete(fetched))
        assert table.execute(TableOperation.retrieve(key, key)).result is None

    def test_percent_key_is_not_decoded_twice(self, table):
        table.execute(TableOperation.insert(DynamicTableEntity(PartitionKey="p", RowKey="%25")))
        assert table.execute(TableOperation.retrieve("p", "%")).result is None
        assert table.execute(TableOperation.retrieve("p", "%25")).result is not None


class TestBatchOperations:
    """Tests for escaped keys inside a batch."""

    def test_batch_insert_and_retrieve(self, table):
        batch = TableBatchOperation()
        for index, key in enumerate(KEY_MATRIX):
            batch.insert(DynamicTableEntity(PartitionKey="batch", RowKey=key, properties={"Index": index}))
        results = table.execute_batch(batch)
        assert len(results) == len(KEY_MATRIX)

        for index, key in enumerate(KEY_MATRIX):
            fetched = table.execute(TableOperation.retrieve("batch", key)).result
            assert fetched["Index"] == index

    def test_batch_delete(self, table):
        for key in KEY_MATRIX:
            table.execute(TableOperation.insert(DynamicTableEntity(PartitionKey="batch", RowKey=key)))

        batch = TableBatchOperation()
        for key in KEY_MATRIX:
            batch.delete(DynamicTableEntity(PartitionKey="batch", RowKey=key, etag="*"))
        table.execute_batch(batch)

        assert list(table.execute_query(TableQuery())) == []


class TestFilters:
    """Tests for escaped values in filter literals."""

    @pytest.mark.parametrize("key", [k for k in KEY_MATRIX if k])
    def test_query_by_row_key_returns_exactly_one(self, table, key):
        for row_key in KEY_MATRIX:
            table.execute(TableOperation.insert(DynamicTableEntity(PartitionKey="q", RowKey=row_key)))

        query = TableQuery(filter=generate_filter_condition("RowKey", QueryComparisons.EQUAL, key))
        results = list(table.execute_query(query))
        assert [entity.RowKey for entity in results] == [key]

    def test_unicode_property_query(self, table):
        table.execute(TableOperation.insert(
            DynamicTableEntity(PartitionKey="u", RowKey="1", properties={"City": "東京"})))
        table.execute(TableOperation.insert(
            DynamicTableEntity(PartitionKey="u", RowKey="2", properties={"City": "京都"})))

        query = TableQuery(filter=generate_filter_condition("City", QueryComparisons.EQUAL, "東京"))
        results = list(table.execute_query(query))
        assert len(results) == 1
        assert results[0].RowKey == "1"
