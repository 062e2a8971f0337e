"""
JSON entity codec for the Table service.

Request payloads are identical for every JSON metadata level: properties
whose kind JSON cannot carry natively are always annotated with
``<name>@odata.type``. On the way back the codec honors annotations when
present and otherwise resolves kinds from the target entity type, a caller
supplied property resolver, or JSON-native inference, in that order.

References:
    - Payload Format for Table Service Operations
    - OData JSON Format v3
"""

import json
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, Union
from urllib.parse import quote, unquote

from tablezure.exceptions import (
    EntityValidationError,
    PropertyParseError,
    SerializationError,
    UnsupportedPayloadFormatError,
)
from tablezure.table.keys import entity_path
from tablezure.table.models import SYSTEM_PROPERTIES, DynamicTableEntity, EntityBase, TableEntity
from tablezure.table.resolver import PropertyResolver, invoke_resolver
from tablezure.table.types import (
    EdmType,
    EntityProperty,
    format_datetime,
    from_wire_value,
    infer_wire_type,
    needs_annotation,
    parse_datetime,
    raw_as_string,
    to_wire_value,
)

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
ODATA_TYPE_SUFFIX = "@odata.type"

MAX_PROPERTIES = 252
MAX_PROPERTY_NAME_LENGTH = 255
MAX_PROPERTY_BYTES = 64 * 1024
MAX_ENTITY_BYTES = 1024 * 1024

_ETAG_TIMESTAMP = re.compile(r"""^W/"datetime'(?P<ts>[^']+)'"$""")


class TablePayloadFormat(str, Enum):
    """Payload formats a request can select through its Accept header."""
    JSON_FULL_METADATA = "application/json;odata=fullmetadata"
    JSON_MINIMAL_METADATA = "application/json;odata=minimalmetadata"
    JSON_NO_METADATA = "application/json;odata=nometadata"
    ATOM = "application/atom+xml"

    @classmethod
    def from_accept(cls, accept: Optional[str]) -> "TablePayloadFormat":
        """Pick the format named by an Accept header; minimal metadata by default."""
        text = (accept or "").replace(" ", "").lower()
        for candidate in cls:
            if candidate.value in text:
                return candidate
        return cls.JSON_MINIMAL_METADATA


def ensure_supported(payload_format: TablePayloadFormat) -> TablePayloadFormat:
    """
    Raises:
        UnsupportedPayloadFormatError: For formats the codec cannot produce (Atom)
    """
    if payload_format == TablePayloadFormat.ATOM:
        raise UnsupportedPayloadFormatError(
            "Atom payloads are not supported; select a JSON payload format",
            details={"payload_format": payload_format.value},
        )
    return payload_format


def accept_header(payload_format: TablePayloadFormat) -> str:
    """Accept header value that asks the service for the given format."""
    return ensure_supported(payload_format).value


# ========== ETag / Timestamp ==========

def etag_from_timestamp(timestamp: str) -> str:
    """Weak ETag the service derives from an entity's raw Timestamp."""
    return "W/\"datetime'" + quote(timestamp, safe="") + "'\""


def timestamp_from_etag(etag: Optional[str]) -> Optional[datetime]:
    """Recover the Timestamp encoded in a service ETag, when it holds one."""
    if not etag:
        return None
    match = _ETAG_TIMESTAMP.match(etag)
    if not match:
        return None
    try:
        return parse_datetime(unquote(match.group("ts")))
    except ValueError:
        return None


# ========== Serialization ==========

def entity_to_document(entity: EntityBase) -> Dict[str, Any]:
    """
    Build the ordered JSON document for a request payload.

    Raises:
        EntityValidationError: If the entity breaks a property limit
    """
    properties = entity.write_properties()
    if len(properties) > MAX_PROPERTIES:
        raise EntityValidationError(
            f"Entity has {len(properties)} properties; at most {MAX_PROPERTIES} are allowed",
            details={"property_count": len(properties)},
        )

    document: Dict[str, Any] = {}
    if entity.PartitionKey is not None:
        document["PartitionKey"] = entity.PartitionKey
    if entity.RowKey is not None:
        document["RowKey"] = entity.RowKey

    for name, prop in properties.items():
        if prop.value is None:
            continue
        _check_property_name(name)
        try:
            wire_value = to_wire_value(prop)
        except (TypeError, ValueError, OverflowError) as exc:
            raise EntityValidationError(
                f"Property '{name}' cannot be serialized as {prop.edm_type.value}: {exc}",
                details={"property_name": name, "edm_type": prop.edm_type.value},
            ) from exc
        _check_property_size(name, prop, wire_value)
        if needs_annotation(prop, wire_value):
            document[name + ODATA_TYPE_SUFFIX] = prop.edm_type.value
        document[name] = wire_value

    return document


def serialize_entity(
    entity: EntityBase,
    payload_format: TablePayloadFormat = TablePayloadFormat.JSON_MINIMAL_METADATA,
) -> bytes:
    """
    Serialize an entity as a request payload.

    The result does not depend on ``payload_format``; the format is validated
    so Atom is rejected before anything is sent.

    Raises:
        UnsupportedPayloadFormatError: If Atom is selected
        EntityValidationError: If the entity breaks a size or range limit
    """
    ensure_supported(payload_format)
    payload = dump_json(entity_to_document(entity))
    if len(payload) > MAX_ENTITY_BYTES:
        raise EntityValidationError(
            f"Entity payload is {len(payload)} bytes; the limit is {MAX_ENTITY_BYTES}",
            details={"size": len(payload)},
        )
    return payload


def dump_json(document: Any) -> bytes:
    """Compact UTF-8 JSON with code points kept as-is."""
    return json.dumps(document, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _check_property_name(name: str) -> None:
    if not name or len(name) > MAX_PROPERTY_NAME_LENGTH:
        raise EntityValidationError(
            f"Property name must be 1-{MAX_PROPERTY_NAME_LENGTH} characters, got {len(name)}",
            details={"property_name": name},
        )
    if name in SYSTEM_PROPERTIES or name.startswith("odata."):
        raise EntityValidationError(
            f"Property name '{name}' is reserved",
            details={"property_name": name},
        )


def _check_property_size(name: str, prop: EntityProperty, wire_value: Any) -> None:
    if prop.edm_type == EdmType.STRING:
        size = len(wire_value.encode("utf-16-le"))
    elif prop.edm_type == EdmType.BINARY:
        size = len(bytes(prop.value))
    else:
        return
    if size > MAX_PROPERTY_BYTES:
        raise EntityValidationError(
            f"Property '{name}' is {size} bytes; the limit is {MAX_PROPERTY_BYTES}",
            details={"property_name": name, "size": size},
        )


# ========== Deserialization ==========

def load_json(data: Union[bytes, str, Mapping[str, Any]]) -> Any:
    """Decode a JSON payload, raising SerializationError on malformed input."""
    if isinstance(data, Mapping):
        return data
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)
    except (UnicodeDecodeError, ValueError) as exc:
        raise SerializationError(f"Malformed JSON payload: {exc}") from exc


def deserialize_entity(
    data: Union[bytes, str, Mapping[str, Any]],
    payload_format: TablePayloadFormat = TablePayloadFormat.JSON_MINIMAL_METADATA,
    property_resolver: Optional[PropertyResolver] = None,
    entity_type: Type[EntityBase] = DynamicTableEntity,
) -> EntityBase:
    """
    Deserialize one entity from a response payload.

    Args:
        data: Response body or an already decoded JSON object
        payload_format: Format the response was requested in
        property_resolver: Consulted for properties without an annotation
        entity_type: ``DynamicTableEntity`` or a ``TableEntity`` subclass

    Raises:
        PropertyParseError: If a value cannot be parsed as its resolved kind
        ResolverDelegateError: If the resolver raises
        SerializationError: If the payload is malformed
    """
    ensure_supported(payload_format)
    document = load_json(data)
    if not isinstance(document, Mapping):
        raise SerializationError("Entity payload must be a JSON object")
    return entity_from_document(document, property_resolver, entity_type)


def deserialize_entities(
    data: Union[bytes, str, Mapping[str, Any]],
    payload_format: TablePayloadFormat = TablePayloadFormat.JSON_MINIMAL_METADATA,
    property_resolver: Optional[PropertyResolver] = None,
    entity_type: Type[EntityBase] = DynamicTableEntity,
) -> List[EntityBase]:
    """Deserialize a query response (``{"value": [...]}``)."""
    ensure_supported(payload_format)
    document = load_json(data)
    rows = document.get("value") if isinstance(document, Mapping) else None
    if not isinstance(rows, list):
        raise SerializationError("Query payload must hold a 'value' array")
    logger.debug(f"Decoding {len(rows)} entities as {entity_type.__name__}")
    return [entity_from_document(row, property_resolver, entity_type) for row in rows]


def entity_from_document(
    document: Mapping[str, Any],
    property_resolver: Optional[PropertyResolver] = None,
    entity_type: Type[EntityBase] = DynamicTableEntity,
) -> EntityBase:
    """Materialize an entity from a decoded JSON object."""
    partition_key = document.get("PartitionKey")
    row_key = document.get("RowKey")
    raw_timestamp = document.get("Timestamp")

    timestamp = None
    if isinstance(raw_timestamp, str):
        try:
            timestamp = parse_datetime(raw_timestamp)
        except ValueError as exc:
            raise PropertyParseError("Timestamp", raw_timestamp, EdmType.DATETIME.value) from exc

    etag = document.get("odata.etag")
    if etag is None and isinstance(raw_timestamp, str):
        etag = etag_from_timestamp(raw_timestamp)

    declared = entity_type.declared_types() if issubclass(entity_type, TableEntity) else {}
    annotations = {
        key[:-len(ODATA_TYPE_SUFFIX)]: value
        for key, value in document.items()
        if key.endswith(ODATA_TYPE_SUFFIX)
    }

    properties: Dict[str, EntityProperty] = {}
    for name, raw in document.items():
        if raw is None or name in SYSTEM_PROPERTIES or name.startswith("odata.") or "@odata." in name:
            continue
        properties[name] = _read_property(
            partition_key or "",
            row_key or "",
            name,
            raw,
            annotations.get(name),
            declared.get(name),
            property_resolver,
        )

    return entity_type.read_entity(partition_key, row_key, timestamp, etag, properties)


def _read_property(
    partition_key: str,
    row_key: str,
    name: str,
    raw: Any,
    annotation: Optional[str],
    declared: Optional[EdmType],
    resolver: Optional[PropertyResolver],
) -> EntityProperty:
    if annotation is not None:
        try:
            edm_type = EdmType(annotation)
        except ValueError as exc:
            raise SerializationError(
                f"Property '{name}' has unknown type annotation '{annotation}'",
                details={"property_name": name},
            ) from exc
    elif declared is not None:
        edm_type = declared
    elif resolver is not None:
        edm_type = invoke_resolver(resolver, partition_key, row_key, name, raw_as_string(raw))
        if edm_type is None:
            edm_type = infer_wire_type(raw)
    else:
        edm_type = infer_wire_type(raw)

    try:
        value = from_wire_value(raw, edm_type)
    except (TypeError, ValueError, OverflowError) as exc:
        raise PropertyParseError(name, raw_as_string(raw), edm_type.value) from exc
    return EntityProperty(value, edm_type)


# ========== Response rendering ==========

def encode_response_entity(
    table_name: str,
    partition_key: str,
    row_key: str,
    timestamp: datetime,
    etag: str,
    properties: Mapping[str, EntityProperty],
    payload_format: TablePayloadFormat,
    base_url: str = "",
    in_collection: bool = False,
) -> Dict[str, Any]:
    """
    Render a stored entity the way the service returns it.

    Full metadata carries odata.type/id/editLink and annotates every
    non-string kind; minimal metadata carries odata.etag and only the
    annotations JSON needs; no metadata carries bare properties.
    """
    ensure_supported(payload_format)
    document: Dict[str, Any] = {}
    path = entity_path(table_name, partition_key, row_key)

    if payload_format == TablePayloadFormat.JSON_FULL_METADATA:
        if not in_collection:
            document["odata.metadata"] = f"{base_url}/$metadata#{table_name}/@Element"
        document["odata.type"] = f"{_account_from_url(base_url)}.{table_name}"
        document["odata.id"] = f"{base_url}/{path}"
        document["odata.etag"] = etag
        document["odata.editLink"] = path
    elif payload_format == TablePayloadFormat.JSON_MINIMAL_METADATA:
        if not in_collection:
            document["odata.metadata"] = f"{base_url}/$metadata#{table_name}/@Element"
        document["odata.etag"] = etag

    document["PartitionKey"] = partition_key
    document["RowKey"] = row_key
    if payload_format == TablePayloadFormat.JSON_FULL_METADATA:
        document["Timestamp" + ODATA_TYPE_SUFFIX] = EdmType.DATETIME.value
    document["Timestamp"] = format_datetime(timestamp)

    for name, prop in properties.items():
        if prop.value is None:
            continue
        wire_value = to_wire_value(prop)
        if payload_format == TablePayloadFormat.JSON_FULL_METADATA:
            annotate = prop.edm_type not in (EdmType.STRING, EdmType.BOOLEAN, EdmType.INT32)
        elif payload_format == TablePayloadFormat.JSON_MINIMAL_METADATA:
            annotate = needs_annotation(prop, wire_value)
        else:
            annotate = False
        if annotate:
            document[name + ODATA_TYPE_SUFFIX] = prop.edm_type.value
        document[name] = wire_value
    return document


def encode_query_response(
    table_name: str,
    documents: Iterable[Dict[str, Any]],
    payload_format: TablePayloadFormat,
    base_url: str = "",
) -> bytes:
    """Wrap rendered entities in a query response body."""
    body: Dict[str, Any] = {}
    if payload_format != TablePayloadFormat.JSON_NO_METADATA:
        body["odata.metadata"] = f"{base_url}/$metadata#{table_name}"
    body["value"] = list(documents)
    return dump_json(body)


def _account_from_url(base_url: str) -> str:
    host = base_url.split("://", 1)[-1].split("/", 1)
    if len(host) > 1 and host[1]:
        return host[1].split("/", 1)[0]
    return host[0].split(".", 1)[0].split(":", 1)[0]


# ========== Tables ==========

def serialize_table_name(table_name: str) -> bytes:
    """Request body for Create Table."""
    return dump_json({"TableName": table_name})


def deserialize_table_names(data: Union[bytes, str, Mapping[str, Any]]) -> List[str]:
    """Table names from a Query Tables response."""
    document = load_json(data)
    rows = document.get("value") if isinstance(document, Mapping) else None
    if not isinstance(rows, list):
        raise SerializationError("Table listing must hold a 'value' array")
    names = []
    for row in rows:
        if not isinstance(row, Mapping) or not isinstance(row.get("TableName"), str):
            raise SerializationError("Table listing row has no TableName")
        names.append(row["TableName"])
    return names


def encode_table_listing(
    table_names: Iterable[str],
    payload_format: TablePayloadFormat,
    base_url: str = "",
) -> bytes:
    """Render a Query Tables response body."""
    rows: List[Dict[str, Any]] = []
    for name in table_names:
        row: Dict[str, Any] = {}
        if payload_format == TablePayloadFormat.JSON_FULL_METADATA:
            row["odata.type"] = f"{_account_from_url(base_url)}.Tables"
            row["odata.id"] = f"{base_url}/Tables('{name}')"
            row["odata.editLink"] = f"Tables('{name}')"
        row["TableName"] = name
        rows.append(row)
    body: Dict[str, Any] = {}
    if payload_format != TablePayloadFormat.JSON_NO_METADATA:
        body["odata.metadata"] = f"{base_url}/$metadata#Tables"
    body["value"] = rows
    return dump_json(body)
