"""
Integration tests for entity group transactions.
"""

import threading

import pytest

from tablezure import CloudTableClient, OperationContext, StorageCredentialsAccountAndKey
from tablezure.core.config_manager import TableRequestOptions
from tablezure.emulator import DEVSTORE_ACCOUNT_KEY, DEVSTORE_ACCOUNT_NAME, InMemoryTableService
from tablezure.exceptions import (
    BatchPartitionKeyError,
    BatchServiceError,
    BatchValidationError,
    EmptyBatchError,
    OperationCancelledError,
)
from tablezure.table import DynamicTableEntity, TableBatchOperation, TableOperation, TablePayloadFormat, TableQuery
from tablezure.transport.retry import LinearRetry

EMULATOR_URL = "http://127.0.0.1:10002/devstoreaccount1"

JSON_FORMATS = [
    TablePayloadFormat.JSON_FULL_METADATA,
    TablePayloadFormat.JSON_MINIMAL_METADATA,
    TablePayloadFormat.JSON_NO_METADATA,
]


@pytest.fixture
def service():
    return InMemoryTableService()


@pytest.fixture
def table(service):
    credentials = StorageCredentialsAccountAndKey(DEVSTORE_ACCOUNT_NAME, DEVSTORE_ACCOUNT_KEY)
    client = CloudTableClient(EMULATOR_URL, credentials, transport=service)
    table = client.get_table_reference("orders")
    table.create()
    return table


def order(row_key, **properties):
    return DynamicTableEntity(PartitionKey="customer1", RowKey=row_key, properties=properties)


def all_row_keys(table):
    return [entity.RowKey for entity in table.execute_query(TableQuery())]


class TestBatchSuccess:
    """Tests for batches the service accepts."""

    @pytest.mark.parametrize("payload_format", JSON_FORMATS, ids=lambda f: f.name)
    def test_mixed_operations(self, table, payload_format):
        existing = order("003", Total=1)
        table.execute(TableOperation.insert(existing))

        batch = TableBatchOperation()
        batch.insert(order("001", Total=10))
        batch.insert_or_replace(order("002", Total=20))
        batch.merge(DynamicTableEntity(PartitionKey="customer1", RowKey="003", etag=existing.etag,
                                       properties={"Shipped": True}))
        results = table.execute_batch(batch, TableRequestOptions(payload_format=payload_format))

        assert [r.http_status_code for r in results] == [204, 204, 204]
        assert all(r.etag for r in results)
        assert results[0].result.RowKey == "001"
        assert all_row_keys(table) == ["001", "002", "003"]
        merged = table.execute(TableOperation.retrieve("customer1", "003")).result
        assert merged["Total"] == 1
        assert merged["Shipped"] is True

    def test_results_refresh_entity_etags(self, table):
        first, second = order("a"), order("b")
        batch = TableBatchOperation()
        batch.insert(first)
        batch.insert(second)
        table.execute_batch(batch)

        assert first.etag and second.etag
        assert first.etag != second.etag

    def test_single_retrieve_batch(self, table):
        table.execute(TableOperation.insert(order("r1", Total=5)))
        batch = TableBatchOperation()
        batch.retrieve("customer1", "r1")
        [result] = table.execute_batch(batch)
        assert result.result["Total"] == 5

    def test_context_manager(self, table):
        with table.batch() as batch:
            batch.insert(order("x"))
            batch.insert(order("y"))
        assert all_row_keys(table) == ["x", "y"]

    def test_one_request_per_batch(self, table, service):
        before = service.request_count
        batch = TableBatchOperation()
        for index in range(100):
            batch.insert(order(f"{index:03d}"))
        table.execute_batch(batch)
        assert service.request_count == before + 1
        assert len(all_row_keys(table)) == 100


class TestBatchFailure:
    """Tests for batches the service rejects."""

    def test_failed_index_and_rollback(self, table):
        table.execute(TableOperation.insert(order("002")))

        batch = TableBatchOperation()
        batch.insert(order("001"))
        batch.insert(order("002"))
        batch.insert(order("003"))
        with pytest.raises(BatchServiceError) as exc_info:
            table.execute_batch(batch)

        assert exc_info.value.failed_index == 1
        assert exc_info.value.status == 409
        assert exc_info.value.error_code == "EntityAlreadyExists"
        assert all_row_keys(table) == ["002"]

    def test_stale_etag_rolls_back(self, table):
        entity = order("001", Total=1)
        table.execute(TableOperation.insert(entity))
        stale = entity.etag
        table.execute(TableOperation.replace(entity))

        batch = TableBatchOperation()
        batch.insert(order("000"))
        batch.replace(DynamicTableEntity(PartitionKey="customer1", RowKey="001", etag=stale))
        with pytest.raises(BatchServiceError) as exc_info:
            table.execute_batch(batch)

        assert exc_info.value.failed_index == 1
        assert exc_info.value.status == 412
        assert all_row_keys(table) == ["001"]

    def test_empty_batch_never_sent(self, table, service):
        before = service.request_count
        with pytest.raises(EmptyBatchError):
            table.execute_batch(TableBatchOperation())
        assert service.request_count == before

    def test_cross_partition_add_rejected(self, table, service):
        before = service.request_count
        batch = TableBatchOperation()
        batch.insert(order("001"))
        with pytest.raises(BatchPartitionKeyError):
            batch.insert(DynamicTableEntity(PartitionKey="other", RowKey="1"))
        table.execute_batch(batch)
        assert service.request_count == before + 1

    def test_batch_cannot_run_twice(self, table):
        batch = TableBatchOperation()
        batch.insert(order("001"))
        table.execute_batch(batch)
        with pytest.raises(BatchValidationError):
            table.execute_batch(batch)


class TestBatchCancellation:
    """Tests for cancelling a batch before it is sent."""

    def test_cancelled_batch_sends_nothing(self, table, service):
        cancel = threading.Event()
        cancel.set()
        batch = TableBatchOperation()
        batch.insert(order("001"))
        batch.insert(order("002"))
        before = service.request_count

        with pytest.raises(OperationCancelledError):
            table.execute_batch(batch, cancel_event=cancel)

        assert service.request_count == before
        assert all_row_keys(table) == []

    def test_cancelled_during_backoff(self, table, service):
        cancel = threading.Event()
        service.fail_next(503, count=1)
        batch = TableBatchOperation()
        batch.insert(order("001"))
        before = service.request_count

        context = OperationContext()
        context.retrying.append(lambda event: cancel.set())
        options = TableRequestOptions(retry_policy=LinearRetry(3, 0))

        with pytest.raises(OperationCancelledError):
            table.execute_batch(batch, options, cancel_event=cancel, operation_context=context)

        assert service.request_count - before == 1
        assert all_row_keys(table) == []
