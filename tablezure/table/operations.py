"""
Single-entity table operations.

A ``TableOperation`` describes one insert, update, delete or retrieve. It
knows how to render itself as an HTTP request and how to read the service's
answer; the client supplies transport, retries and authorization.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Type

from tablezure.exceptions import ValidationError
from tablezure.table.codec import (
    JSON_CONTENT_TYPE,
    TablePayloadFormat,
    accept_header,
    deserialize_entity,
    serialize_entity,
    timestamp_from_etag,
)
from tablezure.table.keys import entity_path, validate_key
from tablezure.table.models import DynamicTableEntity, EntityBase
from tablezure.table.resolver import PropertyResolver

logger = logging.getLogger(__name__)

DATA_SERVICE_VERSION = "3.0;NetFx"
PREFER_NO_CONTENT = "return-no-content"
PREFER_CONTENT = "return-content"


class TableOperationType(str, Enum):
    """Kinds of single-entity operations."""
    INSERT = "Insert"
    DELETE = "Delete"
    REPLACE = "Replace"
    MERGE = "Merge"
    INSERT_OR_REPLACE = "InsertOrReplace"
    INSERT_OR_MERGE = "InsertOrMerge"
    RETRIEVE = "Retrieve"

    def requires_etag(self) -> bool:
        return self in (TableOperationType.DELETE, TableOperationType.REPLACE, TableOperationType.MERGE)

    def has_body(self) -> bool:
        return self not in (TableOperationType.DELETE, TableOperationType.RETRIEVE)


_METHODS = {
    TableOperationType.INSERT: "POST",
    TableOperationType.DELETE: "DELETE",
    TableOperationType.REPLACE: "PUT",
    TableOperationType.MERGE: "MERGE",
    TableOperationType.INSERT_OR_REPLACE: "PUT",
    TableOperationType.INSERT_OR_MERGE: "MERGE",
    TableOperationType.RETRIEVE: "GET",
}


@dataclass(frozen=True)
class RequestSpec:
    """Transport independent request: method, table-relative path, headers, body."""
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class TableResult:
    """
    Outcome of one operation.

    Attributes:
        result: The written entity (etag/Timestamp refreshed) or the retrieved one
        http_status_code: Status the service answered with
        etag: ETag reported for the entity
    """
    result: Optional[EntityBase]
    http_status_code: int
    etag: Optional[str] = None


@dataclass(frozen=True)
class TableOperation:
    """
    One entity operation. Build instances with the factory classmethods.

    Example:
        op = TableOperation.insert(DynamicTableEntity(PartitionKey="pk", RowKey="rk"))
        result = table.execute(op)
    """
    operation_type: TableOperationType
    entity: Optional[EntityBase] = None
    retrieve_keys: Optional[tuple] = None
    entity_type: Type[EntityBase] = DynamicTableEntity
    property_resolver: Optional[PropertyResolver] = None
    echo_content: bool = False

    # ========== Factories ==========

    @classmethod
    def insert(cls, entity: EntityBase, echo_content: bool = False) -> "TableOperation":
        return cls._for_entity(TableOperationType.INSERT, entity, echo_content=echo_content)

    @classmethod
    def insert_or_merge(cls, entity: EntityBase) -> "TableOperation":
        return cls._for_entity(TableOperationType.INSERT_OR_MERGE, entity)

    @classmethod
    def insert_or_replace(cls, entity: EntityBase) -> "TableOperation":
        return cls._for_entity(TableOperationType.INSERT_OR_REPLACE, entity)

    @classmethod
    def merge(cls, entity: EntityBase) -> "TableOperation":
        return cls._for_entity(TableOperationType.MERGE, entity)

    @classmethod
    def replace(cls, entity: EntityBase) -> "TableOperation":
        return cls._for_entity(TableOperationType.REPLACE, entity)

    @classmethod
    def delete(cls, entity: EntityBase) -> "TableOperation":
        return cls._for_entity(TableOperationType.DELETE, entity)

    @classmethod
    def retrieve(
        cls,
        partition_key: str,
        row_key: str,
        entity_type: Type[EntityBase] = DynamicTableEntity,
        property_resolver: Optional[PropertyResolver] = None,
    ) -> "TableOperation":
        """Point query by (PartitionKey, RowKey)."""
        validate_key(partition_key, "PartitionKey")
        validate_key(row_key, "RowKey")
        return cls(
            TableOperationType.RETRIEVE,
            retrieve_keys=(partition_key, row_key),
            entity_type=entity_type,
            property_resolver=property_resolver,
        )

    @classmethod
    def _for_entity(
        cls,
        operation_type: TableOperationType,
        entity: EntityBase,
        echo_content: bool = False,
    ) -> "TableOperation":
        if entity is None:
            raise ValidationError(f"{operation_type.value} requires an entity")
        if entity.PartitionKey is None or entity.RowKey is None:
            raise ValidationError(
                f"{operation_type.value} requires both PartitionKey and RowKey to be set",
                details={"operation": operation_type.value},
            )
        if operation_type.requires_etag() and not entity.etag:
            raise ValidationError(
                f"{operation_type.value} requires an ETag (which may be the '*' wildcard)",
                details={"operation": operation_type.value},
            )
        return cls(operation_type, entity=entity, entity_type=type(entity), echo_content=echo_content)

    # ========== Keys ==========

    @property
    def partition_key(self) -> str:
        if self.retrieve_keys is not None:
            return self.retrieve_keys[0]
        return self.entity.PartitionKey

    @property
    def row_key(self) -> str:
        if self.retrieve_keys is not None:
            return self.retrieve_keys[1]
        return self.entity.RowKey

    # ========== Wire ==========

    def serialized_body(self, payload_format: TablePayloadFormat) -> bytes:
        if not self.operation_type.has_body():
            return b""
        return serialize_entity(self.entity, payload_format)

    def build_request(
        self,
        table_name: str,
        payload_format: TablePayloadFormat,
        body: Optional[bytes] = None,
    ) -> RequestSpec:
        """
        Render the operation as a request against ``table_name``.

        Args:
            table_name: Target table
            payload_format: Response format to ask for
            body: Pre-serialized entity payload, when the caller already has it
        """
        headers = {
            "Accept": accept_header(payload_format),
            "DataServiceVersion": DATA_SERVICE_VERSION,
            "MaxDataServiceVersion": DATA_SERVICE_VERSION,
        }
        if self.operation_type == TableOperationType.INSERT:
            path = table_name
        else:
            path = entity_path(table_name, self.partition_key, self.row_key)

        if self.operation_type.has_body():
            if body is None:
                body = self.serialized_body(payload_format)
            headers["Content-Type"] = JSON_CONTENT_TYPE
        else:
            body = b""

        if self.operation_type == TableOperationType.INSERT:
            headers["Prefer"] = PREFER_CONTENT if self.echo_content else PREFER_NO_CONTENT
        if self.operation_type.requires_etag():
            headers["If-Match"] = self.entity.etag

        return RequestSpec(_METHODS[self.operation_type], path, headers, body)

    def parse_response(
        self,
        status: int,
        headers: Mapping[str, str],
        body: bytes,
        payload_format: TablePayloadFormat,
        property_resolver: Optional[PropertyResolver] = None,
    ) -> TableResult:
        """
        Read a successful (or 404 retrieve) response.

        Writes refresh the caller's entity ``etag`` and ``Timestamp``; a
        retrieve materializes a new entity of ``entity_type``.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        etag = lowered.get("etag")

        if self.operation_type == TableOperationType.RETRIEVE:
            if status == 404:
                return TableResult(None, status)
            entity = deserialize_entity(
                body,
                payload_format,
                self.property_resolver or property_resolver,
                self.entity_type,
            )
            if etag:
                entity.etag = etag
            return TableResult(entity, status, entity.etag)

        if self.operation_type == TableOperationType.DELETE:
            return TableResult(self.entity, status, None)

        if body and status == 201:
            echoed = deserialize_entity(body, payload_format)
            etag = etag or echoed.etag
            timestamp = echoed.Timestamp
        else:
            timestamp = timestamp_from_etag(etag)
        if etag:
            self.entity.etag = etag
        if timestamp is not None:
            self.entity.Timestamp = timestamp
        return TableResult(self.entity, status, etag)
