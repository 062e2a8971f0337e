"""Query values: the immutable query description and continuation state."""

from dataclasses import dataclass, field, replace
from typing import Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from tablezure.table.models import DynamicTableEntity, EntityBase

NEXT_PARTITION_KEY_HEADER = "x-ms-continuation-NextPartitionKey"
NEXT_ROW_KEY_HEADER = "x-ms-continuation-NextRowKey"
NEXT_TABLE_NAME_HEADER = "x-ms-continuation-NextTableName"

MAX_TAKE = 1000

E = TypeVar("E", bound=EntityBase)


@dataclass(frozen=True)
class TableQuery:
    """
    Immutable query description.

    Attributes:
        filter: OData ``$filter`` string (see :mod:`tablezure.table.filters`)
        select: Property names for ``$select``; None selects everything
        take: Page size for ``$top`` (1-1000)
        entity_type: Entity class results are materialized as
    """
    filter: Optional[str] = None
    select: Optional[Tuple[str, ...]] = None
    take: Optional[int] = None
    entity_type: Type[EntityBase] = DynamicTableEntity

    def __post_init__(self) -> None:
        if self.take is not None and not 1 <= self.take <= MAX_TAKE:
            raise ValueError(f"take must be between 1 and {MAX_TAKE}, got {self.take}")
        if self.select is not None and not isinstance(self.select, tuple):
            object.__setattr__(self, "select", tuple(self.select))

    def where(self, filter_expr: str) -> "TableQuery":
        return replace(self, filter=filter_expr)

    def with_select(self, columns: Sequence[str]) -> "TableQuery":
        return replace(self, select=tuple(columns))

    def with_take(self, take: int) -> "TableQuery":
        return replace(self, take=take)

    def to_query_params(self) -> Dict[str, str]:
        """Query string parameters for the Query Entities call."""
        params: Dict[str, str] = {}
        if self.filter:
            params["$filter"] = self.filter
        if self.select:
            columns = list(self.select)
            for system in ("PartitionKey", "RowKey", "Timestamp"):
                if system not in columns:
                    columns.append(system)
            params["$select"] = ",".join(columns)
        if self.take is not None:
            params["$top"] = str(self.take)
        return params


@dataclass(frozen=True)
class ContinuationToken:
    """Position to resume a query from, taken from the continuation headers."""
    next_partition_key: Optional[str] = None
    next_row_key: Optional[str] = None
    next_table_name: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Dict[str, str]) -> Optional["ContinuationToken"]:
        """Read the continuation headers; None when the result set is complete."""
        lowered = {k.lower(): v for k, v in headers.items()}
        token = cls(
            next_partition_key=lowered.get(NEXT_PARTITION_KEY_HEADER.lower()),
            next_row_key=lowered.get(NEXT_ROW_KEY_HEADER.lower()),
            next_table_name=lowered.get(NEXT_TABLE_NAME_HEADER.lower()),
        )
        if token.next_partition_key is None and token.next_table_name is None:
            return None
        return token

    def to_query_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.next_partition_key is not None:
            params["NextPartitionKey"] = self.next_partition_key
        if self.next_row_key is not None:
            params["NextRowKey"] = self.next_row_key
        if self.next_table_name is not None:
            params["NextTableName"] = self.next_table_name
        return params


@dataclass
class QuerySegment(Generic[E]):
    """One page of query results."""
    results: List[E] = field(default_factory=list)
    continuation_token: Optional[ContinuationToken] = None

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)
