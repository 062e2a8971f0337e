"""
Pydantic models for Azure Table Storage entities.

Defines the two entity kinds the codec reads and writes: statically typed
entities (subclasses of ``TableEntity`` declaring their properties as model
fields) and dynamic property bags (``DynamicTableEntity``).
"""

import re
import types
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Any, Dict, Iterable, Optional, Tuple, Type, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from tablezure.exceptions import SerializationError
from tablezure.table.keys import validate_key
from tablezure.table.types import EdmType, EntityProperty, coerce_property

SYSTEM_PROPERTIES = frozenset({"PartitionKey", "RowKey", "Timestamp"})

# Declares a 64-bit integer property on a typed entity: ``Count: Int64 = 0``
Int64 = Annotated[int, EdmType.INT64]


class TableNameValidator:
    """Validates Azure Table Storage table naming rules."""

    @staticmethod
    def validate(name: str) -> Tuple[bool, Optional[str]]:
        """
        Validate table name against Azure rules.

        Rules:
        - 3-63 characters
        - Alphanumeric only
        - Must start with a letter
        - Case-insensitive (stored as-is but compared case-insensitively)

        Args:
            name: Table name to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Table name cannot be empty"

        if len(name) < 3 or len(name) > 63:
            return False, f"Table name must be between 3 and 63 characters, got {len(name)}"

        if not re.match(r"^[A-Za-z][A-Za-z0-9]*$", name):
            return False, "Table name must start with a letter and contain only alphanumeric characters"

        return True, None


class EntityBase(BaseModel):
    """
    System properties shared by every entity kind.

    PartitionKey and RowKey are validated on construction and on assignment.
    Timestamp and etag are assigned by the service; an etag of ``"*"`` skips
    the optimistic concurrency check on merge, replace and delete.
    """
    model_config = ConfigDict(
        validate_assignment=True,
        arbitrary_types_allowed=True,
        populate_by_name=True,
    )

    PartitionKey: Optional[str] = Field(default=None, description="Partition key for the entity")
    RowKey: Optional[str] = Field(default=None, description="Row key for the entity")
    Timestamp: Optional[datetime] = Field(default=None, description="Last modification timestamp")
    etag: Optional[str] = Field(default=None, description="ETag for optimistic concurrency")

    @field_validator("PartitionKey", "RowKey")
    @classmethod
    def validate_keys(cls, v: Optional[str], info: Any) -> Optional[str]:
        """Reject reserved and control characters; empty keys are allowed."""
        if v is None:
            return v
        return validate_key(v, info.field_name)

    def write_properties(self) -> Dict[str, EntityProperty]:
        """Return the user properties to serialize, in declaration order."""
        raise NotImplementedError

    @classmethod
    def read_entity(
        cls,
        partition_key: Optional[str],
        row_key: Optional[str],
        timestamp: Optional[datetime],
        etag: Optional[str],
        properties: Dict[str, EntityProperty],
    ) -> "EntityBase":
        """Build an entity from deserialized properties."""
        raise NotImplementedError


class DynamicTableEntity(EntityBase):
    """
    Entity whose properties are only known at runtime.

    Example:
        entity = DynamicTableEntity(PartitionKey="pk", RowKey="rk")
        entity["Email"] = "walter@contoso.com"
        entity.set("Id", uuid.uuid4())
        entity.set("Count", 10, EdmType.INT64)
    """
    properties: Dict[str, EntityProperty] = Field(default_factory=dict)

    @field_validator("properties", mode="before")
    @classmethod
    def wrap_plain_values(cls, v: Any) -> Any:
        """Allow plain Python values; they are wrapped with an inferred type."""
        if isinstance(v, dict):
            return {name: coerce_property(value) for name, value in v.items()}
        return v

    def set(self, name: str, value: Any, edm_type: Optional[EdmType] = None) -> None:
        """Set a property, optionally forcing its EDM type."""
        self.properties[name] = coerce_property(value, edm_type)

    def __getitem__(self, name: str) -> Any:
        return self.properties[name].value

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def __contains__(self, name: object) -> bool:
        return name in self.properties

    def write_properties(self) -> Dict[str, EntityProperty]:
        return {
            name: prop for name, prop in self.properties.items()
            if name not in SYSTEM_PROPERTIES and prop.value is not None
        }

    @classmethod
    def read_entity(cls, partition_key, row_key, timestamp, etag, properties):
        return cls(
            PartitionKey=partition_key,
            RowKey=row_key,
            Timestamp=timestamp,
            etag=etag,
            properties=dict(properties),
        )


class TableEntity(EntityBase):
    """
    Base class for statically typed entities.

    Subclasses declare their properties as annotated model fields; the field
    annotation is the property's type when a payload carries no type
    information.

    Example:
        class CustomerEntity(TableEntity):
            Email: Optional[str] = None
            Id: Optional[uuid.UUID] = None
            Visits: Int64 = 0
    """
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def declared_types(cls) -> Dict[str, EdmType]:
        """Map of declared property name to EDM type."""
        return _declared_types(cls)

    def write_properties(self) -> Dict[str, EntityProperty]:
        result: Dict[str, EntityProperty] = {}
        declared = self.declared_types()
        for name, edm_type in declared.items():
            value = getattr(self, name)
            if value is None:
                continue
            result[name] = EntityProperty(value, edm_type)
        return result

    @classmethod
    def read_entity(cls, partition_key, row_key, timestamp, etag, properties):
        declared = cls.declared_types()
        values = {name: prop.value for name, prop in properties.items() if name in declared}
        try:
            return cls(
                PartitionKey=partition_key,
                RowKey=row_key,
                Timestamp=timestamp,
                etag=etag,
                **values,
            )
        except PydanticValidationError as exc:
            raise SerializationError(
                f"Cannot materialize {cls.__name__} from response: {exc}",
                details={"entity_type": cls.__name__},
            ) from exc


_BASE_FIELDS = frozenset(EntityBase.model_fields)


@lru_cache(maxsize=None)
def _declared_types(entity_type: Type[TableEntity]) -> Dict[str, EdmType]:
    result: Dict[str, EdmType] = {}
    for name, field in entity_type.model_fields.items():
        if name in _BASE_FIELDS:
            continue
        edm_type = edm_type_for_annotation(field.annotation, field.metadata)
        if edm_type is None:
            raise TypeError(
                f"{entity_type.__name__}.{name}: annotation {field.annotation!r} has no EDM type"
            )
        result[name] = edm_type
    return result


_PYTHON_TO_EDM = (
    (bool, EdmType.BOOLEAN),
    (int, EdmType.INT32),
    (float, EdmType.DOUBLE),
    (str, EdmType.STRING),
    (datetime, EdmType.DATETIME),
    (uuid.UUID, EdmType.GUID),
    (bytes, EdmType.BINARY),
)


def edm_type_for_annotation(annotation: Any, metadata: Iterable[Any] = ()) -> Optional[EdmType]:
    """
    Resolve the EDM type declared by a field annotation.

    ``Optional[X]`` unwraps to ``X``; ``Annotated[int, EdmType.INT64]``
    selects the explicit type. Returns None for unsupported annotations.
    """
    for item in metadata:
        if isinstance(item, EdmType):
            return item

    origin = get_origin(annotation)
    if origin is Annotated:
        base, *extras = get_args(annotation)
        return edm_type_for_annotation(base, extras)
    if origin is Union or origin is getattr(types, "UnionType", None):
        members = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(members) == 1:
            return edm_type_for_annotation(members[0])
        return None

    if isinstance(annotation, type):
        for python_type, edm_type in _PYTHON_TO_EDM:
            if issubclass(annotation, python_type):
                return edm_type
    return None
