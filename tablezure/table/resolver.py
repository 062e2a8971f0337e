"""
Property type resolution for schema-less payloads.

A property resolver is a callable ``(partition_key, row_key, name, raw_value)
-> EdmType | None`` consulted for properties whose payload carries no type
annotation. Returning None falls back to JSON-native inference.
"""

import logging
from typing import Callable, Mapping, Optional, Type

from tablezure.exceptions import ResolverDelegateError, SerializationError
from tablezure.table.types import EdmType

logger = logging.getLogger(__name__)

PropertyResolver = Callable[[str, str, str, str], Optional[EdmType]]


def invoke_resolver(
    resolver: PropertyResolver,
    partition_key: str,
    row_key: str,
    name: str,
    raw_value: str,
) -> Optional[EdmType]:
    """
    Call a user resolver and normalize its answer.

    Raises:
        ResolverDelegateError: If the resolver raises (original chained as cause)
        SerializationError: If the resolver returns something other than an EdmType
    """
    try:
        resolved = resolver(partition_key, row_key, name, raw_value)
    except Exception as exc:
        logger.debug(f"Property resolver raised for '{name}': {exc!r}")
        raise ResolverDelegateError(name) from exc

    if resolved is None or isinstance(resolved, EdmType):
        return resolved
    if isinstance(resolved, str):
        try:
            return EdmType(resolved)
        except ValueError:
            pass
    raise SerializationError(
        f"The custom property resolver returned an invalid type {resolved!r} for property '{name}'",
        details={"property_name": name},
    )


def resolver_from_mapping(types_by_name: Mapping[str, EdmType]) -> PropertyResolver:
    """Resolver answering from a fixed name -> EdmType mapping."""
    table = dict(types_by_name)

    def resolve(partition_key: str, row_key: str, name: str, raw_value: str) -> Optional[EdmType]:
        return table.get(name)

    return resolve


def resolver_from_entity_type(entity_type: Type) -> PropertyResolver:
    """Resolver answering from the declared fields of a TableEntity subclass."""
    return resolver_from_mapping(entity_type.declared_types())
