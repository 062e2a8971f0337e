"""
In-memory storage for the emulated Table service.

Tables and entities live in process memory behind a re-entrant lock so a
batch can hold the lock across all of its operations.
"""

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from tablezure.auth.sas import SharedAccessTablePolicy, TablePermissions
from tablezure.table.codec import etag_from_timestamp
from tablezure.table.service_properties import LoggingProperties, MetricsProperties, ServiceProperties
from tablezure.table.types import EntityProperty, format_datetime

EntityKey = Tuple[str, str]

DEFAULT_PAGE_SIZE = 1000


class TableServiceError(Exception):
    """Service-side failure rendered as an odata.error response."""

    status = 400
    code = "InvalidInput"

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status or self.__class__.status
        self.code = code or self.__class__.code


class TableAlreadyExistsError(TableServiceError):
    """Raised when attempting to create a table that already exists."""
    status = 409
    code = "TableAlreadyExists"


class TableNotFoundError(TableServiceError):
    """Raised when a table is not found."""
    status = 404
    code = "TableNotFound"


class EntityAlreadyExistsError(TableServiceError):
    """Raised when attempting to insert an entity that already exists."""
    status = 409
    code = "EntityAlreadyExists"


class EntityNotFoundError(TableServiceError):
    """Raised when an entity is not found."""
    status = 404
    code = "ResourceNotFound"


class ETagMismatchError(TableServiceError):
    """Raised when ETag doesn't match for optimistic concurrency."""
    status = 412
    code = "UpdateConditionNotSatisfied"


@dataclass
class StoredEntity:
    """Entity as held by the service."""
    partition_key: str
    row_key: str
    properties: Dict[str, EntityProperty]
    timestamp: datetime
    etag: str


@dataclass
class TableState:
    name: str
    entities: Dict[EntityKey, StoredEntity] = field(default_factory=dict)
    policies: Dict[str, SharedAccessTablePolicy] = field(default_factory=dict)


def _default_service_properties() -> ServiceProperties:
    return ServiceProperties(LoggingProperties(), MetricsProperties(), MetricsProperties(), [])


class TableBackend:
    """
    In-memory backend for the emulated Table service.

    Table names are matched case-insensitively and stored as created.
    """

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._tables: Dict[str, TableState] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._last_timestamp: Optional[datetime] = None
        self._service_properties = _default_service_properties()

    def reset(self) -> None:
        """Reset all tables, entities and service properties."""
        with self._lock:
            self._tables.clear()
            self._service_properties = _default_service_properties()

    # ========== Tables ==========

    def create_table(self, table_name: str) -> TableState:
        """
        Raises:
            TableAlreadyExistsError: If table already exists
        """
        with self._lock:
            if self._find_table(table_name) is not None:
                raise TableAlreadyExistsError("The table specified already exists.")
            table = TableState(table_name)
            self._tables[table_name.lower()] = table
            return table

    def delete_table(self, table_name: str) -> None:
        """
        Raises:
            TableNotFoundError: If table not found
        """
        with self._lock:
            self._table(table_name)
            del self._tables[table_name.lower()]

    def get_table(self, table_name: str) -> TableState:
        with self._lock:
            return self._table(table_name)

    def list_tables(self) -> List[str]:
        """Table names in case-insensitive order."""
        with self._lock:
            return [self._tables[key].name for key in sorted(self._tables)]

    def set_policies(self, table_name: str, permissions: TablePermissions) -> None:
        with self._lock:
            self._table(table_name).policies = dict(permissions.shared_access_policies)

    def get_policies(self, table_name: str) -> Dict[str, SharedAccessTablePolicy]:
        with self._lock:
            table = self._find_table(table_name)
            return dict(table.policies) if table else {}

    def get_service_properties(self) -> ServiceProperties:
        with self._lock:
            return copy.deepcopy(self._service_properties)

    def set_service_properties(self, properties: ServiceProperties) -> None:
        """Replace the sections present in ``properties``; others keep their value."""
        with self._lock:
            self._service_properties = copy.deepcopy(properties.merged_over(self._service_properties))

    # ========== Entities ==========

    def insert_entity(self, table_name: str, partition_key: str, row_key: str,
                      properties: Dict[str, EntityProperty]) -> StoredEntity:
        """
        Raises:
            TableNotFoundError: If table not found
            EntityAlreadyExistsError: If entity already exists
        """
        with self._lock:
            table = self._table(table_name)
            key = (partition_key, row_key)
            if key in table.entities:
                raise EntityAlreadyExistsError("The specified entity already exists.")
            return self._store(table, key, dict(properties))

    def get_entity(self, table_name: str, partition_key: str, row_key: str) -> StoredEntity:
        """
        Raises:
            TableNotFoundError: If table not found
            EntityNotFoundError: If entity not found
        """
        with self._lock:
            table = self._table(table_name)
            entity = table.entities.get((partition_key, row_key))
            if entity is None:
                raise EntityNotFoundError("The specified resource does not exist.")
            return entity

    def replace_entity(self, table_name: str, partition_key: str, row_key: str,
                       properties: Dict[str, EntityProperty], if_match: Optional[str] = None,
                       upsert: bool = False) -> StoredEntity:
        """
        Replace all properties of an entity (insert it when ``upsert``).

        Raises:
            EntityNotFoundError: If the entity is missing and not upserting
            ETagMismatchError: If ``if_match`` does not match
        """
        with self._lock:
            table = self._table(table_name)
            key = (partition_key, row_key)
            self._check_existing(table, key, if_match, upsert)
            return self._store(table, key, dict(properties))

    def merge_entity(self, table_name: str, partition_key: str, row_key: str,
                     properties: Dict[str, EntityProperty], if_match: Optional[str] = None,
                     upsert: bool = False) -> StoredEntity:
        """Merge properties into an entity (insert it when ``upsert``)."""
        with self._lock:
            table = self._table(table_name)
            key = (partition_key, row_key)
            existing = self._check_existing(table, key, if_match, upsert)
            merged = dict(existing.properties) if existing else {}
            merged.update(properties)
            return self._store(table, key, merged)

    def delete_entity(self, table_name: str, partition_key: str, row_key: str,
                      if_match: Optional[str] = None) -> None:
        with self._lock:
            table = self._table(table_name)
            key = (partition_key, row_key)
            self._check_existing(table, key, if_match or "*", upsert=False)
            del table.entities[key]

    def query_entities(
        self,
        table_name: str,
        predicate: Callable[[StoredEntity], bool],
        top: Optional[int] = None,
        next_partition_key: Optional[str] = None,
        next_row_key: Optional[str] = None,
    ) -> Tuple[List[StoredEntity], Optional[EntityKey]]:
        """
        Return one page of matching entities in (PartitionKey, RowKey) order.

        Returns:
            Tuple of (entities, key of the next entity to resume from or None)
        """
        with self._lock:
            table = self._table(table_name)
            limit = min(top or DEFAULT_PAGE_SIZE, DEFAULT_PAGE_SIZE)
            sorted_keys = sorted(table.entities)

            start = (next_partition_key, next_row_key or "") if next_partition_key is not None else None
            results: List[StoredEntity] = []
            for key in sorted_keys:
                if start is not None and key < start:
                    continue
                entity = table.entities[key]
                if not predicate(entity):
                    continue
                if len(results) == limit:
                    return results, key
                results.append(entity)
            return results, None

    # ========== Transactions ==========

    @contextmanager
    def transaction(self, table_name: str) -> Iterator[TableState]:
        """
        Apply a group of changes atomically: on error, restore the table.
        """
        with self._lock:
            table = self._table(table_name)
            snapshot = copy.copy(table.entities)
            try:
                yield table
            except BaseException:
                table.entities = snapshot
                raise

    # ========== Internals ==========

    def _find_table(self, table_name: str) -> Optional[TableState]:
        return self._tables.get(table_name.lower())

    def _table(self, table_name: str) -> TableState:
        table = self._find_table(table_name)
        if table is None:
            raise TableNotFoundError("The table specified does not exist.")
        return table

    def _check_existing(self, table: TableState, key: EntityKey, if_match: Optional[str],
                        upsert: bool) -> Optional[StoredEntity]:
        existing = table.entities.get(key)
        if existing is None:
            if upsert and not if_match:
                return None
            raise EntityNotFoundError("The specified resource does not exist.")
        if if_match and if_match != "*" and if_match != existing.etag:
            raise ETagMismatchError("The update condition specified in the request was not satisfied.")
        return existing

    def _store(self, table: TableState, key: EntityKey, properties: Dict[str, EntityProperty]) -> StoredEntity:
        timestamp = self._next_timestamp()
        entity = StoredEntity(
            partition_key=key[0],
            row_key=key[1],
            properties=properties,
            timestamp=timestamp,
            etag=etag_from_timestamp(format_datetime(timestamp)),
        )
        table.entities[key] = entity
        return entity

    def _next_timestamp(self) -> datetime:
        # Distinct timestamps keep ETags unique per write
        now = self._clock().astimezone(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now
