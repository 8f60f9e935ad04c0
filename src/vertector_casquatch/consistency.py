"""Consistency level parsing on top of ``cassandra.ConsistencyLevel``."""

from cassandra import ConsistencyLevel

from vertector_casquatch.exceptions import BindingError


def parse_consistency(value: str | int) -> int:
    """
    Resolve a consistency name or constant to a ``ConsistencyLevel`` value.

    Args:
        value: Name such as ``"LOCAL_QUORUM"`` (case-insensitive) or an
            integer ``ConsistencyLevel`` constant

    Returns:
        The integer constant understood by the driver

    Raises:
        BindingError: If the value is not a known consistency level
    """
    if isinstance(value, bool):
        raise BindingError(f"Unrecognized consistency level {value!r}", field="consistency")

    if isinstance(value, int):
        if value in ConsistencyLevel.value_to_name:
            return value
        raise BindingError(f"Unrecognized consistency level {value!r}", field="consistency")

    if isinstance(value, str):
        level = ConsistencyLevel.name_to_value.get(value.strip().upper())
        if level is not None:
            return level

    raise BindingError(f"Unrecognized consistency level {value!r}", field="consistency")


def consistency_name(level: int) -> str:
    """Return the canonical name (e.g. ``LOCAL_QUORUM``) for a consistency constant."""
    return ConsistencyLevel.value_to_name[parse_consistency(level)]
