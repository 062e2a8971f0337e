"""
Entity group transactions.

A ``TableBatchOperation`` collects operations that the service applies
atomically. All invariants are checked locally, without a network call:
when an operation is added and again right before the batch is sent.
"""

import logging
from typing import Iterator, List, Optional, Set, Tuple

from tablezure.exceptions import (
    BatchDuplicateKeyError,
    BatchPartitionKeyError,
    BatchPayloadTooLargeError,
    BatchRetrieveError,
    BatchTooLargeError,
    BatchValidationError,
    EmptyBatchError,
)
from tablezure.table.codec import TablePayloadFormat
from tablezure.table.models import DynamicTableEntity, EntityBase
from tablezure.table.operations import TableOperation, TableOperationType

logger = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 100
MAX_BATCH_PAYLOAD_BYTES = 4 * 1024 * 1024
# Estimated multipart framing per operation (boundaries, request line, headers)
BATCH_OPERATION_OVERHEAD_BYTES = 512


class TableBatchOperation:
    """
    Ordered group of operations against one partition.

    Example:
        batch = TableBatchOperation()
        batch.insert(DynamicTableEntity(PartitionKey="pk", RowKey="1"))
        batch.insert(DynamicTableEntity(PartitionKey="pk", RowKey="2"))
        results = table.execute_batch(batch)
    """

    def __init__(self):
        self._operations: List[TableOperation] = []
        self._partition_key: Optional[str] = None
        self._keys: Set[Tuple[str, str]] = set()
        self._executed = False

    # ========== Adding operations ==========

    def add(self, operation: TableOperation) -> None:
        """
        Append an operation after checking the batch invariants.

        Raises:
            BatchValidationError: If the operation would break an invariant
        """
        if self._executed:
            raise BatchValidationError("The batch has already been executed")
        if len(self._operations) >= MAX_BATCH_OPERATIONS:
            raise BatchTooLargeError(
                f"A batch holds at most {MAX_BATCH_OPERATIONS} operations",
                details={"limit": MAX_BATCH_OPERATIONS},
            )
        self._check_retrieve(self._operations, operation)

        partition_key = operation.partition_key
        if self._partition_key is not None and partition_key != self._partition_key:
            raise BatchPartitionKeyError(
                "All operations in a batch must share one PartitionKey",
                details={"expected": self._partition_key, "actual": partition_key},
            )
        key = (partition_key, operation.row_key)
        if key in self._keys:
            raise BatchDuplicateKeyError(
                "An entity may appear only once in a batch",
                details={"partition_key": key[0], "row_key": key[1]},
            )

        self._operations.append(operation)
        self._keys.add(key)
        self._partition_key = partition_key

    def insert(self, entity: EntityBase, echo_content: bool = False) -> None:
        self.add(TableOperation.insert(entity, echo_content))

    def insert_or_merge(self, entity: EntityBase) -> None:
        self.add(TableOperation.insert_or_merge(entity))

    def insert_or_replace(self, entity: EntityBase) -> None:
        self.add(TableOperation.insert_or_replace(entity))

    def merge(self, entity: EntityBase) -> None:
        self.add(TableOperation.merge(entity))

    def replace(self, entity: EntityBase) -> None:
        self.add(TableOperation.replace(entity))

    def delete(self, entity: EntityBase) -> None:
        self.add(TableOperation.delete(entity))

    def retrieve(self, partition_key: str, row_key: str, entity_type=DynamicTableEntity, property_resolver=None) -> None:
        self.add(TableOperation.retrieve(partition_key, row_key, entity_type, property_resolver))

    # ========== Introspection ==========

    @property
    def partition_key(self) -> Optional[str]:
        return self._partition_key

    @property
    def executed(self) -> bool:
        return self._executed

    def mark_executed(self) -> None:
        self._executed = True

    def __len__(self) -> int:
        return len(self._operations)

    def __iter__(self) -> Iterator[TableOperation]:
        return iter(self._operations)

    def __getitem__(self, index: int) -> TableOperation:
        return self._operations[index]

    @staticmethod
    def _check_retrieve(existing: List[TableOperation], operation: TableOperation) -> None:
        has_retrieve = any(op.operation_type == TableOperationType.RETRIEVE for op in existing)
        if has_retrieve or (existing and operation.operation_type == TableOperationType.RETRIEVE):
            raise BatchRetrieveError("A retrieve operation must be the only operation in a batch")


def validate_batch(
    batch: TableBatchOperation,
    payload_format: TablePayloadFormat = TablePayloadFormat.JSON_MINIMAL_METADATA,
) -> List[bytes]:
    """
    Re-check every batch invariant before dispatch.

    Returns:
        The serialized entity payload of each operation, in order

    Raises:
        BatchValidationError: If any invariant is broken
    """
    if batch.executed:
        raise BatchValidationError("The batch has already been executed")
    operations = list(batch)
    if not operations:
        raise EmptyBatchError("Cannot execute an empty batch")
    if len(operations) > MAX_BATCH_OPERATIONS:
        raise BatchTooLargeError(
            f"A batch holds at most {MAX_BATCH_OPERATIONS} operations",
            details={"count": len(operations)},
        )

    partition_keys = {op.partition_key for op in operations}
    if len(partition_keys) > 1:
        raise BatchPartitionKeyError(
            "All operations in a batch must share one PartitionKey",
            details={"partition_keys": sorted(partition_keys)},
        )
    if len(operations) > 1 and any(op.operation_type == TableOperationType.RETRIEVE for op in operations):
        raise BatchRetrieveError("A retrieve operation must be the only operation in a batch")

    keys = [(op.partition_key, op.row_key) for op in operations]
    if len(set(keys)) != len(keys):
        raise BatchDuplicateKeyError("An entity may appear only once in a batch")

    bodies = [op.serialized_body(payload_format) for op in operations]
    estimated = sum(len(body) for body in bodies) + BATCH_OPERATION_OVERHEAD_BYTES * len(operations)
    if estimated > MAX_BATCH_PAYLOAD_BYTES:
        raise BatchPayloadTooLargeError(
            f"Estimated batch payload of {estimated} bytes exceeds {MAX_BATCH_PAYLOAD_BYTES}",
            details={"estimated_size": estimated},
        )

    logger.debug(f"Batch of {len(operations)} operation(s) validated, ~{estimated} bytes")
    return bodies
