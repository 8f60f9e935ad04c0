"""Equality filters over partition and clustering keys."""

from typing import Any, NamedTuple

from vertector_casquatch.entity import EntityMetadata
from vertector_casquatch.exceptions import InvalidArgumentError


class EqualityFilter(NamedTuple):
    """``column = value`` predicate."""
    column: str
    value: Any


def build_key_filter(metadata: EntityMetadata, instance: Any) -> tuple[EqualityFilter, ...]:
    """
    Build equality filters for the populated key fields of ``instance``.

    Partition keys come first, then clustering keys, each in declaration
    order. Fields whose value is None are omitted, so an instance with only
    its partition key set selects the whole partition.

    Raises:
        BindingError: If a declared key field cannot be read from the instance
    """
    filters = []
    for key in metadata.keys.fields:
        value = metadata.read(instance, key.name)
        if value is not None:
            filters.append(EqualityFilter(key.column, value))
    return tuple(filters)


def build_primary_key(metadata: EntityMetadata, instance: Any) -> tuple[EqualityFilter, ...]:
    """
    Build equality filters covering every declared key field.

    Raises:
        BindingError: If a declared key field cannot be read from the instance
        InvalidArgumentError: If any key field is None
    """
    filters = []
    for key in metadata.keys.fields:
        value = metadata.read(instance, key.name)
        if value is None:
            raise InvalidArgumentError(
                "full primary key required but field is not set",
                argument=key.name,
            )
        filters.append(EqualityFilter(key.column, value))
    return tuple(filters)


def require_partition_key(metadata: EntityMetadata, filters: tuple[EqualityFilter, ...]) -> None:
    """
    Ensure every partition key column is covered by ``filters``.

    Raises:
        InvalidArgumentError: Naming the first partition key without a value
    """
    covered = {f.column for f in filters}
    for key in metadata.keys.partition_keys:
        if key.column not in covered:
            raise InvalidArgumentError(
                "partition key must be set for a partition query",
                argument=key.name,
            )
