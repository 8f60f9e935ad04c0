"""
Per-table routing and consistency resolution.

Each table may have an override record in the administrative routing table
naming the datacenter that serves it and the consistency for reads and
writes. A record keyed ``"default"`` supplies fallback values for tables
without their own record. Resolution is an ordered list of strategies,
evaluated until one produces a route:

1. ``RoutingBypass``: overrides disabled, or the routing table itself
2. ``TableOverride``: the table's own record
3. ``DefaultOverride``: the ``"default"`` record
4. ``SystemDefault``: ``"default"`` routing key, configured consistency

Example:
    cache = RoutingTableCache(CassandraRoutingTableStore(registry, config))
    resolver = RoutingResolver(config, cache)
    route = resolver.resolve("orders", OperationKind.READ)
    handle = registry.handle_for(route.routing_key)
"""

import logging
import threading
from collections import OrderedDict
from enum import Enum
from typing import Any, NamedTuple, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict

from vertector_casquatch.config import DEFAULT_ROUTING_KEY, DriverConfig
from vertector_casquatch.consistency import parse_consistency
from vertector_casquatch.exceptions import InvalidArgumentError
from vertector_casquatch.filters import EqualityFilter

logger = logging.getLogger(__name__)

# Cached marker for tables the store has no record for
_ABSENT = object()


class OverrideRecord(BaseModel):
    """One row of the administrative routing table."""

    model_config = ConfigDict(frozen=True)

    table_name: str
    datacenter: Optional[str] = None
    read_consistency: Optional[str] = None
    write_consistency: Optional[str] = None


class RoutingTableStore(Protocol):
    """Source of override records; ``fetch`` returns None when a table has none."""

    def fetch(self, table: str) -> Optional[OverrideRecord]: ...


class CassandraRoutingTableStore:
    """
    Reads override records from the administrative table on the ``"default"`` connection.

    Expected table layout:
        CREATE TABLE driver_config (
            table_name text PRIMARY KEY,
            data_center text,
            read_consistency text,
            write_consistency text
        );
    """

    def __init__(self, registry, config: DriverConfig):
        self.registry = registry
        self.config = config

    def fetch(self, table: str) -> Optional[OverrideRecord]:
        handle = self.registry.handle_for(DEFAULT_ROUTING_KEY)
        rows = handle.select(
            self.config.keyspace,
            self.config.routing_table,
            (EqualityFilter("table_name", table),),
            self.config.default_consistency_level,
            limit=1,
        )
        if not rows:
            return None

        row = rows[0]
        return OverrideRecord(
            table_name=row.get("table_name") or table,
            datacenter=row.get("data_center"),
            read_consistency=row.get("read_consistency"),
            write_consistency=row.get("write_consistency"),
        )


class RoutingTableCache:
    """
    Read-through cache of override records.

    - A table with no record is cached as absent, so it is fetched once.
    - A failed fetch is logged, reported as absent and not cached, so the
      next lookup tries the store again.
    - Loads for different tables run concurrently; concurrent loads of the
      same table share one fetch.
    - With ``max_size`` set, the least recently used entry is evicted.
    - A load that overlaps an ``invalidate`` returns what it fetched but
      does not cache it.

    Entries never expire on their own; call ``invalidate`` after changing the
    routing table.
    """

    def __init__(self, store: RoutingTableStore, max_size: Optional[int] = None, metrics=None):
        if max_size is not None and max_size <= 0:
            raise InvalidArgumentError("must be positive", argument="max_size", value=max_size)
        self.store = store
        self.max_size = max_size
        self.metrics = metrics
        self.cache: OrderedDict = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self._lock = threading.Lock()
        # table -> [load lock, threads holding or waiting on it]
        self._loads: dict[str, list] = {}
        self._invalidations = 0

    def _get(self, table: str) -> Any:
        with self._lock:
            if table in self.cache:
                self.cache.move_to_end(table)
                return self.cache[table]
        return None

    def _put(self, table: str, value: Any, invalidations: int) -> None:
        with self._lock:
            # An invalidate since the fetch started makes the value stale
            if invalidations != self._invalidations:
                return
            if table in self.cache:
                self.cache.move_to_end(table)
            elif self.max_size is not None and len(self.cache) >= self.max_size:
                self.cache.popitem(last=False)
            self.cache[table] = value

    def _record_hit(self) -> None:
        with self._lock:
            self.hits += 1
        if self.metrics is not None:
            self.metrics.record_cache_hit()

    def _record_miss(self) -> None:
        with self._lock:
            self.misses += 1
        if self.metrics is not None:
            self.metrics.record_cache_miss()

    def lookup(self, table: str) -> Optional[OverrideRecord]:
        """Return the override record for ``table``, or None when there is none or it cannot be read."""
        cached = self._get(table)
        if cached is not None:
            self._record_hit()
            return None if cached is _ABSENT else cached

        with self._lock:
            load = self._loads.setdefault(table, [threading.Lock(), 0])
            load[1] += 1

        try:
            with load[0]:
                return self._load(table)
        finally:
            with self._lock:
                load[1] -= 1
                if load[1] == 0:
                    del self._loads[table]

    def _load(self, table: str) -> Optional[OverrideRecord]:
        cached = self._get(table)
        if cached is not None:
            self._record_hit()
            return None if cached is _ABSENT else cached

        self._record_miss()
        with self._lock:
            invalidations = self._invalidations
        try:
            record = self.store.fetch(table)
        except Exception as e:
            with self._lock:
                self.errors += 1
            logger.warning(f"Routing lookup for table '{table}' failed, using fallback: {e}")
            return None

        self._put(table, _ABSENT if record is None else record, invalidations)
        return record

    def invalidate(self, table: Optional[str] = None) -> None:
        """Drop one table's entry, or every entry when ``table`` is None."""
        with self._lock:
            self._invalidations += 1
            if table is None:
                self.cache.clear()
            else:
                self.cache.pop(table, None)
        logger.debug(f"Invalidated routing cache entry: {table or '*'}")

    def __contains__(self, table: str) -> bool:
        return table in self.cache

    def __len__(self) -> int:
        return len(self.cache)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics for monitoring."""
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self.cache),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "errors": self.errors,
                "hit_rate": self.hits / total if total > 0 else 0.0,
            }


class OperationKind(str, Enum):
    READ = "read"
    WRITE = "write"

    @classmethod
    def parse(cls, value: Any) -> "OperationKind":
        """
        Accept an ``OperationKind`` or its name, case-insensitively.

        Raises:
            InvalidArgumentError: For anything else
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidArgumentError("must be 'read' or 'write'", argument="operation", value=value)


class Route(NamedTuple):
    """Where an operation is sent and the consistency it requests."""
    routing_key: str
    consistency: int


class RoutingStrategy(Protocol):
    def routing_key(self, table: str) -> Optional[str]: ...

    def route(self, table: str, operation: OperationKind) -> Optional[Route]: ...


class RoutingBypass:
    """Skip override lookups when they are disabled or for the routing table itself."""

    def __init__(self, config: DriverConfig):
        self.config = config

    def _applies(self, table: str) -> bool:
        return not self.config.features.routing_overrides or table == self.config.routing_table

    def routing_key(self, table):
        return DEFAULT_ROUTING_KEY if self._applies(table) else None

    def route(self, table, operation):
        if self._applies(table):
            return Route(DEFAULT_ROUTING_KEY, self.config.default_consistency_level)
        return None


class TableOverride:
    """Route by the table's own override record."""

    def __init__(self, cache: RoutingTableCache):
        self.cache = cache

    def record_for(self, table: str) -> Optional[OverrideRecord]:
        return self.cache.lookup(table)

    def routing_key(self, table):
        record = self.record_for(table)
        if record is None:
            return None
        return record.datacenter or DEFAULT_ROUTING_KEY

    def route(self, table, operation):
        record = self.record_for(table)
        if record is None:
            return None

        if operation == OperationKind.READ:
            consistency = record.read_consistency
        else:
            consistency = record.write_consistency
        return Route(record.datacenter or DEFAULT_ROUTING_KEY, parse_consistency(consistency))


class DefaultOverride(TableOverride):
    """Route by the ``"default"`` override record."""

    def record_for(self, table):
        return self.cache.lookup(DEFAULT_ROUTING_KEY)


class SystemDefault:
    """Route to the ``"default"`` connection with the configured consistency."""

    def __init__(self, config: DriverConfig):
        self.config = config

    def routing_key(self, table):
        return DEFAULT_ROUTING_KEY

    def route(self, table, operation):
        return Route(DEFAULT_ROUTING_KEY, self.config.default_consistency_level)


class RoutingResolver:
    """
    Resolve ``(routing key, consistency)`` for a table and operation kind.

    Performs no connection I/O itself; cache misses load through the
    routing table store.
    """

    def __init__(
        self,
        config: DriverConfig,
        cache: RoutingTableCache,
        strategies: Optional[Sequence[RoutingStrategy]] = None,
    ):
        self.config = config
        self.cache = cache
        self.strategies = list(strategies) if strategies is not None else [
            RoutingBypass(config),
            TableOverride(cache),
            DefaultOverride(cache),
            SystemDefault(config),
        ]

    def resolve(self, table: str, operation: OperationKind | str) -> Route:
        """
        Resolve the route for one operation against ``table``.

        Raises:
            InvalidArgumentError: If ``operation`` is not read or write
            BindingError: If the selected override names an unknown consistency
        """
        operation = OperationKind.parse(operation)
        for strategy in self.strategies:
            route = strategy.route(table, operation)
            if route is not None:
                logger.debug(
                    f"Resolved {operation.value} on {table} via {type(strategy).__name__}: "
                    f"{route.routing_key}/{route.consistency}"
                )
                return route

        raise InvalidArgumentError(f"no routing strategy matched table '{table}'", argument="table", value=table)

    def routing_key_for(self, table: str) -> str:
        """Routing key for ``table``, ignoring consistency."""
        for strategy in self.strategies:
            key = strategy.routing_key(table)
            if key is not None:
                return key
        return DEFAULT_ROUTING_KEY
