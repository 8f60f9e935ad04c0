"""
CQL text builders.

Every builder returns ``(query, parameters)`` using ``%s`` placeholders, as
accepted by ``SimpleStatement`` and ``Session.execute``. Identifiers are
validated before they are interpolated.
"""

from typing import Any, Mapping, Sequence

from vertector_casquatch.entity import validate_identifier
from vertector_casquatch.exceptions import InvalidArgumentError
from vertector_casquatch.filters import EqualityFilter

SEARCH_COLUMN = "solr_query"


def qualified_table(keyspace: str | None, table: str) -> str:
    validate_identifier(table, "table")
    if keyspace:
        validate_identifier(keyspace, "keyspace")
        return f"{keyspace}.{table}"
    return table


def _where(filters: Sequence[EqualityFilter]) -> tuple[str, tuple]:
    if not filters:
        return "", ()
    clauses = []
    for f in filters:
        validate_identifier(f.column, "column")
        clauses.append(f"{f.column} = %s")
    return " WHERE " + " AND ".join(clauses), tuple(f.value for f in filters)


def _limit(limit: int | None) -> str:
    if limit is None:
        return ""
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise InvalidArgumentError("must be a positive integer", argument="limit", value=limit)
    return f" LIMIT {limit}"


def select_statement(
    keyspace: str | None,
    table: str,
    filters: Sequence[EqualityFilter],
    limit: int | None = None,
) -> tuple[str, tuple]:
    """SELECT * filtered by equality predicates."""
    where, params = _where(filters)
    return f"SELECT * FROM {qualified_table(keyspace, table)}{where}{_limit(limit)}", params


def upsert_statement(keyspace: str | None, table: str, values: Mapping[str, Any]) -> tuple[str, tuple]:
    """INSERT of the given columns; Cassandra inserts are upserts."""
    if not values:
        raise InvalidArgumentError("no columns to write", argument="values")
    columns = [validate_identifier(column, "column") for column in values]
    placeholders = ", ".join(["%s"] * len(columns))
    query = f"INSERT INTO {qualified_table(keyspace, table)} ({', '.join(columns)}) VALUES ({placeholders})"
    return query, tuple(values.values())


def delete_statement(keyspace: str | None, table: str, key_filters: Sequence[EqualityFilter]) -> tuple[str, tuple]:
    """DELETE of the row or partition identified by ``key_filters``."""
    if not key_filters:
        raise InvalidArgumentError("refusing to delete without key predicates", argument="key_filters")
    where, params = _where(key_filters)
    return f"DELETE FROM {qualified_table(keyspace, table)}{where}", params


def search_statement(keyspace: str | None, table: str, query: str, limit: int) -> tuple[str, tuple]:
    """Full-text search through the ``solr_query`` pseudo column."""
    return (
        f"SELECT * FROM {qualified_table(keyspace, table)} WHERE {SEARCH_COLUMN} = %s{_limit(limit)}",
        (query,),
    )


def count_statement(keyspace: str | None, table: str, query: str) -> tuple[str, tuple]:
    """Row count for a full-text search."""
    return (
        f"SELECT count(*) FROM {qualified_table(keyspace, table)} WHERE {SEARCH_COLUMN} = %s",
        (query,),
    )
