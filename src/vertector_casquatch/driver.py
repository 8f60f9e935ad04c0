"""
CassandraDriver: routed CRUD access to a multi-datacenter cluster.

Every entity operation resolves a routing key and consistency for the
entity's table, takes the transport handle for that key from the
connection registry and dispatches the statement on it:

    config = DriverConfig(contact_points=["cass1"], keyspace="shop", local_dc="east")

    with CassandraDriver(config) as driver:
        driver.save(Order(customer_id=1, order_id=7, total=9.5))
        order = driver.get_by_id(Order(customer_id=1, order_id=7))
        orders = driver.get_all_by_id(Order(customer_id=1))
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future
from contextlib import contextmanager, nullcontext
from typing import Any, Optional, TypeVar

from vertector_casquatch.config import DEFAULT_ROUTING_KEY, DriverConfig
from vertector_casquatch.connections import ConnectionRegistry
from vertector_casquatch.entity import EntityMetadata, get_entity_metadata
from vertector_casquatch.exceptions import (
    CasquatchError,
    FeatureDisabledError,
    InvalidArgumentError,
    translate_driver_error,
)
from vertector_casquatch.filters import build_key_filter, build_primary_key, require_partition_key
from vertector_casquatch.logging_utils import log_context
from vertector_casquatch.observability import EnhancedMetrics, Tracer
from vertector_casquatch.routing import (
    CassandraRoutingTableStore,
    OperationKind,
    RoutingResolver,
    RoutingTableCache,
    RoutingTableStore,
)
from vertector_casquatch.transport import ClusterTransportProvider, TransportHandle, TransportProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTH_CHECK_QUERY = "SELECT now() FROM system.local"


class CassandraDriver:
    """
    Facade over the connection registry, routing resolver and transport.

    Safe to share between threads. Entity types must be registered with
    ``@table``; key-based operations take an instance of the entity with its
    key fields populated.
    """

    def __init__(
        self,
        config: DriverConfig,
        *,
        transport_provider: Optional[TransportProvider] = None,
        routing_store: Optional[RoutingTableStore] = None,
        routing_cache_size: Optional[int] = None,
        enable_tracing: bool = False,
        tracer: Optional[Tracer] = None,
    ):
        """
        Initialize the driver. No connection is opened until first use.

        Args:
            config: Validated driver configuration
            transport_provider: Opens transport handles; ``ClusterTransportProvider`` by default
            routing_store: Source of override records; the administrative
                table on the ``"default"`` connection by default
            routing_cache_size: Maximum cached override records (unbounded when None)
            enable_tracing: Wrap operations in OpenTelemetry spans
            tracer: Tracer to use instead of creating one

        Raises:
            ConfigurationError: If a required setting is missing
        """
        config.validate_required()
        self.config = config

        self.metrics = EnhancedMetrics()
        self.tracer = tracer or (Tracer(enabled=True) if enable_tracing else None)

        self.registry = ConnectionRegistry(config, transport_provider or ClusterTransportProvider())
        self.routing_cache = RoutingTableCache(
            routing_store or CassandraRoutingTableStore(self.registry, config),
            max_size=routing_cache_size,
            metrics=self.metrics,
        )
        self.resolver = RoutingResolver(config, self.routing_cache)

        self._close_lock = threading.Lock()
        self._closed = False

        logger.info(
            f"CassandraDriver initialized: keyspace={config.keyspace}, local_dc={config.local_dc}, "
            f"topology={config.topology.value}, routing_overrides={config.features.routing_overrides}, "
            f"search={config.features.search}"
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _track(self, operation: str, **attributes: Any):
        """Time, trace and translate errors of one facade operation."""
        start = time.perf_counter()
        span = self.tracer.span(f"casquatch.{operation}", attributes) if self.tracer else nullcontext()
        try:
            with log_context(operation=operation, **attributes), span:
                yield
        except CasquatchError as e:
            self._record(operation, start, e)
            raise
        except Exception as e:
            error = translate_driver_error(e, operation)
            self._record(operation, start, error)
            raise error from e
        else:
            self._record(operation, start)

    def _record(self, operation: str, start: float, error: Optional[Exception] = None) -> None:
        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics.record_operation(
            operation,
            latency_ms,
            success=error is None,
            error_type=type(error).__name__ if error is not None else None,
        )

    def _keyspace(self, metadata: EntityMetadata) -> str:
        return metadata.keyspace or self.config.keyspace

    def _routed(self, metadata: EntityMetadata, operation: OperationKind) -> tuple[TransportHandle, int]:
        route = self.resolver.resolve(metadata.table, operation)
        return self.registry.handle_for(route.routing_key), route.consistency

    def _require_search(self) -> None:
        if not self.config.features.search:
            raise FeatureDisabledError("search")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, key: T) -> Optional[T]:
        """
        Fetch the row identified by the full primary key populated on ``key``.

        Args:
            key: Entity instance with every partition and clustering key set;
                other fields are ignored

        Returns:
            The stored entity, or None if no such row exists

        Raises:
            InvalidArgumentError: If any key field is None
            BindingError: If a key field cannot be read
        """
        metadata = get_entity_metadata(key)
        with self._track("get_by_id", table=metadata.table):
            key_filters = build_primary_key(metadata, key)
            handle, consistency = self._routed(metadata, OperationKind.READ)
            row = handle.fetch(self._keyspace(metadata), metadata.table, key_filters, consistency)
            return metadata.from_row(row) if row is not None else None

    def exists_by_id(self, key: Any) -> bool:
        """Return True if the row identified by the full primary key on ``key`` exists."""
        metadata = get_entity_metadata(key)
        with self._track("exists_by_id", table=metadata.table):
            key_filters = build_primary_key(metadata, key)
            handle, consistency = self._routed(metadata, OperationKind.READ)
            return handle.fetch(self._keyspace(metadata), metadata.table, key_filters, consistency) is not None

    def get_one_by_id(self, key: T) -> Optional[T]:
        """
        Fetch the first row of a partition, narrowed by any clustering keys set on ``key``.

        Raises:
            InvalidArgumentError: If a partition key field is None
        """
        metadata = get_entity_metadata(key)
        with self._track("get_one_by_id", table=metadata.table):
            filters = build_key_filter(metadata, key)
            require_partition_key(metadata, filters)
            handle, consistency = self._routed(metadata, OperationKind.READ)
            rows = handle.select(self._keyspace(metadata), metadata.table, filters, consistency, limit=1)
            return metadata.from_row(rows[0]) if rows else None

    def get_all_by_id(self, key: T) -> list[T]:
        """
        Fetch every row of a partition, narrowed by any clustering keys set on ``key``.

        Raises:
            InvalidArgumentError: If a partition key field is None
        """
        metadata = get_entity_metadata(key)
        with self._track("get_all_by_id", table=metadata.table):
            filters = build_key_filter(metadata, key)
            require_partition_key(metadata, filters)
            handle, consistency = self._routed(metadata, OperationKind.READ)
            rows = handle.select(self._keyspace(metadata), metadata.table, filters, consistency)
            return [metadata.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write_row(self, metadata: EntityMetadata, entity: Any) -> dict[str, Any]:
        build_primary_key(metadata, entity)
        return metadata.to_row(entity, include_nulls=self.config.save_nulls)

    def save(self, entity: Any) -> None:
        """
        Insert or update ``entity``.

        None fields are omitted unless ``save_nulls`` is enabled, in which
        case they overwrite stored values with nulls.

        Raises:
            InvalidArgumentError: If any key field is None
        """
        metadata = get_entity_metadata(entity)
        with self._track("save", table=metadata.table):
            row = self._write_row(metadata, entity)
            handle, consistency = self._routed(metadata, OperationKind.WRITE)
            handle.upsert(self._keyspace(metadata), metadata.table, row, consistency)

    def save_async(self, entity: Any) -> Future:
        """
        Start saving ``entity`` and return immediately.

        Resolution and validation errors are raised here; execution errors
        are set on the returned future. Cancelling the future stops only the
        caller's wait, never the write.
        """
        metadata = get_entity_metadata(entity)
        with self._track("save_async", table=metadata.table):
            row = self._write_row(metadata, entity)
            handle, consistency = self._routed(metadata, OperationKind.WRITE)
            return handle.upsert_async(self._keyspace(metadata), metadata.table, row, consistency)

    def delete(self, key: Any) -> None:
        """
        Delete the row identified by the full primary key on ``key``.

        Raises:
            InvalidArgumentError: If any key field is None
        """
        metadata = get_entity_metadata(key)
        with self._track("delete", table=metadata.table):
            key_filters = build_primary_key(metadata, key)
            handle, consistency = self._routed(metadata, OperationKind.WRITE)
            handle.delete(self._keyspace(metadata), metadata.table, key_filters, consistency)

    def delete_async(self, key: Any) -> Future:
        """Start deleting the row identified by ``key`` and return immediately."""
        metadata = get_entity_metadata(key)
        with self._track("delete_async", table=metadata.table):
            key_filters = build_primary_key(metadata, key)
            handle, consistency = self._routed(metadata, OperationKind.WRITE)
            return handle.delete_async(self._keyspace(metadata), metadata.table, key_filters, consistency)

    async def asave(self, entity: Any) -> None:
        """
        Await ``save_async`` from asyncio code.

        Resolution and handle construction may block on the routing table or
        a first connect, so they run in the loop's default executor.
        """
        loop = asyncio.get_running_loop()
        future = await loop.run_in_executor(None, self.save_async, entity)
        await asyncio.wrap_future(future)

    async def adelete(self, key: Any) -> None:
        """Await ``delete_async`` from asyncio code; blocking setup runs in the default executor."""
        loop = asyncio.get_running_loop()
        future = await loop.run_in_executor(None, self.delete_async, key)
        await asyncio.wrap_future(future)

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def get_all_by_solr(self, entity_type: type[T], query: str, limit: int = 10) -> list[T]:
        """
        Run a full-text query on the search datacenter.

        Args:
            entity_type: Registered entity type of the searched table
            query: Search query string, bound to the ``solr_query`` column
            limit: Maximum rows to return

        Raises:
            FeatureDisabledError: If search is disabled; no connection is attempted
            InvalidArgumentError: If ``limit`` is not positive
        """
        self._require_search()
        metadata = get_entity_metadata(entity_type)
        with self._track("get_all_by_solr", table=metadata.table, limit=limit):
            if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
                raise InvalidArgumentError("must be a positive integer", argument="limit", value=limit)
            handle = self.registry.handle_for(self.config.search_dc)
            rows = handle.search(
                self._keyspace(metadata), metadata.table, query, limit, self.config.default_consistency_level
            )
            return [metadata.from_row(row) for row in rows]

    def get_count_by_solr(self, entity_type: type, query: str) -> int:
        """
        Count rows matching a full-text query on the search datacenter.

        Raises:
            FeatureDisabledError: If search is disabled; no connection is attempted
        """
        self._require_search()
        metadata = get_entity_metadata(entity_type)
        with self._track("get_count_by_solr", table=metadata.table):
            handle = self.registry.handle_for(self.config.search_dc)
            return handle.count(
                self._keyspace(metadata), metadata.table, query, self.config.default_consistency_level
            )

    # ------------------------------------------------------------------
    # Raw CQL
    # ------------------------------------------------------------------

    def execute(self, cql: str) -> None:
        """
        Run raw CQL on the ``"default"`` connection and discard the results.

        No routing or consistency resolution is applied.
        """
        with self._track("execute"):
            logger.debug(f"Executing {cql} on {DEFAULT_ROUTING_KEY}")
            self.registry.handle_for(DEFAULT_ROUTING_KEY).execute(cql)

    def execute_one(self, entity_type: type[T], cql: str) -> Optional[T]:
        """
        Run raw CQL on the connection serving ``entity_type``'s table and map the first row.

        Routing overrides choose the connection; their consistency is not applied.
        """
        metadata = get_entity_metadata(entity_type)
        with self._track("execute_one", table=metadata.table):
            routing_key = self.resolver.routing_key_for(metadata.table)
            logger.debug(f"Executing {cql} on {routing_key}")
            rows = self.registry.handle_for(routing_key).execute(cql)
            return metadata.from_row(rows[0]) if rows else None

    def execute_all(self, entity_type: type[T], cql: str) -> list[T]:
        """Run raw CQL on the connection serving ``entity_type``'s table and map every row."""
        metadata = get_entity_metadata(entity_type)
        with self._track("execute_all", table=metadata.table):
            routing_key = self.resolver.routing_key_for(metadata.table)
            logger.debug(f"Executing {cql} on {routing_key}")
            rows = self.registry.handle_for(routing_key).execute(cql)
            return [metadata.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Lifecycle and monitoring
    # ------------------------------------------------------------------

    def health_check(self) -> dict[str, Any]:
        """
        Check connectivity on the ``"default"`` connection.

        Returns:
            Dictionary with ``status`` ("healthy" or "unhealthy"), latency and
            open routing keys; never raises
        """
        start = time.perf_counter()
        try:
            self.registry.handle_for(DEFAULT_ROUTING_KEY).execute(HEALTH_CHECK_QUERY)
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "error_type": type(e).__name__,
                "routing_keys": self.registry.keys(),
            }

        return {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "routing_keys": self.registry.keys(),
        }

    def get_metrics(self) -> dict[str, Any]:
        """Operation metrics plus routing cache statistics."""
        stats = self.metrics.get_all_stats()
        stats["routing_cache"] = self.routing_cache.get_stats()
        stats["routing_keys"] = self.registry.keys()
        return stats

    def close(self) -> None:
        """Close every transport handle. Later calls are no-ops."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self.registry.close()
        if self.tracer is not None:
            self.tracer.force_flush()
        logger.info("CassandraDriver closed")

    def __enter__(self) -> "CassandraDriver":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
