"""
Entity registration and key metadata.

Entity types declare their table and key layout once, at class definition
time, with the ``@table`` decorator:

    @table("orders", partition_keys=("customer_id",), clustering_keys=("order_id",))
    class Order(BaseModel):
        customer_id: int | None = None
        order_id: int | None = None
        total: float | None = None

Pydantic models and dataclasses have their fields discovered automatically;
any other class must pass ``columns`` explicitly.
"""

import dataclasses
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from pydantic import BaseModel

from vertector_casquatch.exceptions import BindingError

ENTITY_METADATA_ATTR = "__casquatch_entity__"

# CQL identifiers: letter first, then alphanumerics and underscores, max 48 chars
_IDENTIFIER = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]{0,47}$")


def validate_identifier(name: str, kind: str) -> str:
    """Reject keyspace, table and column names that are not plain CQL identifiers."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise BindingError(
            "must start with a letter and contain only alphanumerics and underscores (max 48 chars)",
            field=f"{kind} {name!r}",
        )
    return name


@dataclass(frozen=True)
class KeyField:
    """A partition or clustering key field and the column it maps to."""
    name: str
    column: str


@dataclass(frozen=True)
class EntityKeyDescriptor:
    """Ordered partition and clustering keys of an entity type."""
    partition_keys: tuple[KeyField, ...]
    clustering_keys: tuple[KeyField, ...] = ()

    @property
    def fields(self) -> tuple[KeyField, ...]:
        """Partition keys followed by clustering keys, in declaration order."""
        return self.partition_keys + self.clustering_keys


@dataclass(frozen=True)
class EntityMetadata:
    """Static table metadata for one registered entity type."""
    entity_type: type
    table: str
    keyspace: str | None
    keys: EntityKeyDescriptor
    columns: Mapping[str, str]  # attribute name -> column name

    def read(self, instance: Any, field: str) -> Any:
        """
        Read a declared field from an instance.

        Raises:
            BindingError: If the instance has no such attribute
        """
        try:
            return getattr(instance, field)
        except AttributeError as e:
            raise BindingError(
                f"{type(instance).__name__} instance has no accessor for declared field",
                field=field,
                original_error=e,
            )

    def to_row(self, instance: Any, include_nulls: bool = False) -> dict[str, Any]:
        """Map an instance to ``{column: value}``, omitting None unless ``include_nulls``."""
        row = {}
        for field, column in self.columns.items():
            value = self.read(instance, field)
            if value is None and not include_nulls:
                continue
            row[column] = value
        return row

    def from_row(self, row: Mapping[str, Any]) -> Any:
        """Build an instance from a ``{column: value}`` row; unknown columns are ignored."""
        kwargs = {
            field: row[column]
            for field, column in self.columns.items()
            if column in row
        }
        return self.entity_type(**kwargs)


def _discover_fields(cls: type) -> list[str]:
    if isinstance(cls, type) and issubclass(cls, BaseModel):
        return list(cls.model_fields)
    if dataclasses.is_dataclass(cls):
        return [f.name for f in dataclasses.fields(cls)]
    raise BindingError(
        f"Cannot discover fields of {cls.__name__}; pass columns explicitly",
        field=cls.__name__,
    )


def table(
    name: str,
    *,
    keyspace: str | None = None,
    partition_keys: Sequence[str],
    clustering_keys: Sequence[str] = (),
    columns: Mapping[str, str] | Sequence[str] | None = None,
):
    """
    Class decorator registering an entity type against a table.

    Args:
        name: Table name
        keyspace: Keyspace of the table; the driver's keyspace when None
        partition_keys: Attribute names forming the partition key, in order
        clustering_keys: Attribute names forming the clustering key, in order
        columns: Attribute to column mapping, or a list of attribute names
            stored under their own name. Discovered from pydantic or
            dataclass fields when omitted; a partial mapping renames only
            the listed fields.

    Raises:
        BindingError: If a key names an unknown field, no partition key is
            declared, or an identifier is not valid CQL
    """
    def decorator(cls):
        validate_identifier(name, "table")
        if keyspace is not None:
            validate_identifier(keyspace, "keyspace")

        if columns is None:
            mapping = {field: field for field in _discover_fields(cls)}
        elif isinstance(columns, Mapping):
            try:
                discovered = _discover_fields(cls)
            except BindingError:
                discovered = []
            mapping = {field: field for field in discovered}
            mapping.update(columns)
        else:
            mapping = {field: field for field in columns}

        for column in mapping.values():
            validate_identifier(column, "column")

        if not partition_keys:
            raise BindingError("at least one partition key is required", field=cls.__name__)

        def key_fields(names: Sequence[str]) -> tuple[KeyField, ...]:
            fields = []
            for field in names:
                if field not in mapping:
                    raise BindingError(f"key field is not a field of {cls.__name__}", field=field)
                fields.append(KeyField(name=field, column=mapping[field]))
            return tuple(fields)

        metadata = EntityMetadata(
            entity_type=cls,
            table=name,
            keyspace=keyspace,
            keys=EntityKeyDescriptor(
                partition_keys=key_fields(partition_keys),
                clustering_keys=key_fields(clustering_keys),
            ),
            columns=dict(mapping),
        )
        setattr(cls, ENTITY_METADATA_ATTR, metadata)
        return cls

    return decorator


def get_entity_metadata(entity: Any) -> EntityMetadata:
    """
    Return the registered metadata for an entity type or instance.

    Raises:
        BindingError: If the type was not registered with ``@table``
    """
    cls = entity if isinstance(entity, type) else type(entity)
    metadata = getattr(cls, ENTITY_METADATA_ATTR, None)
    if metadata is None or not issubclass(cls, metadata.entity_type):
        raise BindingError(f"{cls.__name__} is not registered with @table", field=cls.__name__)
    return metadata
