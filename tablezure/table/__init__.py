"""
Table entities, operations and queries.

The client lives in ``tablezure.table.client``.
"""

from tablezure.table.batch import TableBatchOperation
from tablezure.table.codec import TablePayloadFormat
from tablezure.table.filters import QueryComparisons, TableOperators, generate_filter_condition
from tablezure.table.models import DynamicTableEntity, Int64, TableEntity
from tablezure.table.operations import TableOperation, TableOperationType, TableResult
from tablezure.table.query import ContinuationToken, QuerySegment, TableQuery
from tablezure.table.service_properties import CorsRule, LoggingProperties, MetricsProperties, ServiceProperties
from tablezure.table.types import EdmType, EntityProperty

__all__ = [
    "TableBatchOperation",
    "TablePayloadFormat",
    "QueryComparisons",
    "TableOperators",
    "generate_filter_condition",
    "DynamicTableEntity",
    "Int64",
    "TableEntity",
    "TableOperation",
    "TableOperationType",
    "TableResult",
    "ContinuationToken",
    "QuerySegment",
    "TableQuery",
    "CorsRule",
    "LoggingProperties",
    "MetricsProperties",
    "ServiceProperties",
    "EdmType",
    "EntityProperty",
]
