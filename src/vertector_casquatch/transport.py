"""
Transport handles over the Cassandra driver.

A transport handle is one ``Cluster`` plus the ``Session`` connected to the
configured keyspace, with its load balancing policy scoped to a routing key:

- ``"default"``: the local datacenter, optionally allowing remote
  datacenters (high-availability topology)
- any other key: a single-datacenter connection to the datacenter of that name
"""

import logging
import ssl
import threading
from concurrent.futures import Future, InvalidStateError
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from cassandra.auth import PlainTextAuthProvider
from cassandra.cluster import EXEC_PROFILE_DEFAULT, Cluster, ExecutionProfile
from cassandra.policies import (
    ConstantSpeculativeExecutionPolicy,
    DCAwareRoundRobinPolicy,
    ExponentialReconnectionPolicy,
    FallthroughRetryPolicy,
    HostDistance,
    TokenAwarePolicy,
)
from cassandra.query import SimpleStatement, dict_factory

from vertector_casquatch.config import DEFAULT_ROUTING_KEY, ClusterTopology, DriverConfig
from vertector_casquatch.exceptions import DriverConnectionError, translate_driver_error
from vertector_casquatch.filters import EqualityFilter
from vertector_casquatch.statements import (
    count_statement,
    delete_statement,
    search_statement,
    select_statement,
    upsert_statement,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class TransportHandle(Protocol):
    """An open connection pool to one routing key's datacenter."""

    def select(
        self,
        keyspace: str,
        table: str,
        filters: Sequence[EqualityFilter],
        consistency: int,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def fetch(
        self,
        keyspace: str,
        table: str,
        key_filters: Sequence[EqualityFilter],
        consistency: int,
    ) -> dict[str, Any] | None: ...

    def upsert(self, keyspace: str, table: str, values: Mapping[str, Any], consistency: int) -> None: ...

    def upsert_async(self, keyspace: str, table: str, values: Mapping[str, Any], consistency: int) -> Future: ...

    def delete(self, keyspace: str, table: str, key_filters: Sequence[EqualityFilter], consistency: int) -> None: ...

    def delete_async(
        self, keyspace: str, table: str, key_filters: Sequence[EqualityFilter], consistency: int
    ) -> Future: ...

    def search(self, keyspace: str, table: str, query: str, limit: int, consistency: int) -> list[dict[str, Any]]: ...

    def count(self, keyspace: str, table: str, query: str, consistency: int) -> int: ...

    def execute(self, cql: str, parameters: Sequence[Any] | None = None) -> list[dict[str, Any]]: ...

    def close(self) -> None: ...


class TransportProvider(Protocol):
    """Creates transport handles for routing keys."""

    def open(self, routing_key: str, config: DriverConfig) -> TransportHandle: ...


def _resolve_future(future: Future, value: Any) -> None:
    try:
        future.set_result(value)
    except InvalidStateError:
        logger.debug("Result arrived for a future the caller already cancelled")


def _fail_future(future: Future, error: Exception) -> None:
    try:
        future.set_exception(error)
    except InvalidStateError:
        logger.debug(f"Error arrived for a future the caller already cancelled: {error}")


class ClusterTransport:
    """
    ``TransportHandle`` backed by a driver ``Cluster`` and ``Session``.

    Rows are returned as dicts (``dict_factory``). Reads are marked idempotent
    so the speculative execution policy applies to them.
    """

    def __init__(self, routing_key: str, cluster: Cluster, session):
        self.routing_key = routing_key
        self.cluster = cluster
        self.session = session
        self._closed = False
        self._close_lock = threading.Lock()

    def _statement(self, query: str, consistency: int | None, idempotent: bool) -> SimpleStatement:
        return SimpleStatement(query, consistency_level=consistency, is_idempotent=idempotent)

    def _run(self, query: str, params: Sequence[Any], consistency: int | None, idempotent: bool) -> list[dict[str, Any]]:
        logger.debug(f"Executing on {self.routing_key}: {query}")
        result = self.session.execute(self._statement(query, consistency, idempotent), params or None)
        return list(result) if result else []

    def _run_async(self, query: str, params: Sequence[Any], consistency: int, operation: str) -> Future:
        logger.debug(f"Executing asynchronously on {self.routing_key}: {query}")
        future: Future = Future()
        response_future = self.session.execute_async(self._statement(query, consistency, False), params or None)

        def on_success(_rows):
            _resolve_future(future, None)

        def on_error(error):
            _fail_future(future, translate_driver_error(error, operation))

        response_future.add_callbacks(on_success, on_error)
        return future

    def select(self, keyspace, table, filters, consistency, limit=None):
        query, params = select_statement(keyspace, table, filters, limit)
        return self._run(query, params, consistency, idempotent=True)

    def fetch(self, keyspace, table, key_filters, consistency):
        rows = self.select(keyspace, table, key_filters, consistency, limit=1)
        return rows[0] if rows else None

    def upsert(self, keyspace, table, values, consistency):
        query, params = upsert_statement(keyspace, table, values)
        self._run(query, params, consistency, idempotent=False)

    def upsert_async(self, keyspace, table, values, consistency):
        query, params = upsert_statement(keyspace, table, values)
        return self._run_async(query, params, consistency, "save_async")

    def delete(self, keyspace, table, key_filters, consistency):
        query, params = delete_statement(keyspace, table, key_filters)
        self._run(query, params, consistency, idempotent=False)

    def delete_async(self, keyspace, table, key_filters, consistency):
        query, params = delete_statement(keyspace, table, key_filters)
        return self._run_async(query, params, consistency, "delete_async")

    def search(self, keyspace, table, query, limit, consistency):
        cql, params = search_statement(keyspace, table, query, limit)
        return self._run(cql, params, consistency, idempotent=True)

    def count(self, keyspace, table, query, consistency):
        cql, params = count_statement(keyspace, table, query)
        rows = self._run(cql, params, consistency, idempotent=True)
        if not rows:
            return 0
        return int(rows[0].get("count") or 0)

    def execute(self, cql, parameters=None):
        return self._run(cql, parameters, None, idempotent=False)

    def close(self) -> None:
        """Shut the cluster down; later and concurrent calls are no-ops."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self.cluster.shutdown()
        logger.info(f"Closed cluster connection for key {self.routing_key}")


class ClusterTransportProvider:
    """Builds ``ClusterTransport`` handles from a ``DriverConfig``."""

    def load_balancing_policy(self, routing_key: str, config: DriverConfig) -> TokenAwarePolicy:
        """
        Token-aware, datacenter-aware policy for a routing key.

        The default key follows the configured topology against the local
        datacenter; any other key is pinned to the datacenter of that name.
        """
        if routing_key == DEFAULT_ROUTING_KEY and config.topology == ClusterTopology.HIGH_AVAILABILITY:
            logger.info(f"Creating new HA cluster with local set to {config.local_dc}")
            return TokenAwarePolicy(
                DCAwareRoundRobinPolicy(
                    local_dc=config.local_dc,
                    used_hosts_per_remote_dc=config.pool.remote_hosts_per_dc,
                )
            )

        datacenter = config.local_dc if routing_key == DEFAULT_ROUTING_KEY else routing_key
        logger.info(f"Creating new single DC cluster with datacenter set to {datacenter}")
        return TokenAwarePolicy(DCAwareRoundRobinPolicy(local_dc=datacenter))

    def ssl_context(self, config: DriverConfig) -> ssl.SSLContext | None:
        """Client TLS context trusting the configured CA bundle, or None when TLS is off."""
        if not config.tls.enabled:
            return None

        context = ssl.create_default_context(cafile=config.tls.truststore_path)
        verify_mode = getattr(ssl, config.tls.verify_mode)
        if verify_mode == ssl.CERT_NONE:
            # check_hostname must be cleared before CERT_NONE is accepted
            context.check_hostname = False
        context.verify_mode = verify_mode
        return context

    def build_cluster(self, routing_key: str, config: DriverConfig) -> Cluster:
        """Create an unconnected ``Cluster`` for ``routing_key``."""
        profile = ExecutionProfile(
            load_balancing_policy=self.load_balancing_policy(routing_key, config),
            retry_policy=FallthroughRetryPolicy(),
            consistency_level=config.default_consistency_level,
            request_timeout=config.timeouts.read_ms / 1000.0,
            row_factory=dict_factory,
            speculative_execution_policy=ConstantSpeculativeExecutionPolicy(
                delay=config.speculative_execution.delay_ms / 1000.0,
                max_attempts=config.speculative_execution.attempts,
            ),
        )

        cluster_kwargs = {
            "contact_points": config.contact_points,
            "port": config.port,
            "auth_provider": PlainTextAuthProvider(
                username=config.auth.username,
                password=config.auth.password.get_secret_value(),
            ),
            "execution_profiles": {EXEC_PROFILE_DEFAULT: profile},
            "reconnection_policy": ExponentialReconnectionPolicy(
                base_delay=config.reconnection.delay_ms / 1000.0,
                max_delay=config.reconnection.max_delay_ms / 1000.0,
            ),
            "connect_timeout": config.timeouts.connect_ms / 1000.0,
            "ssl_context": self.ssl_context(config),
        }
        if config.protocol_version is not None:
            cluster_kwargs["protocol_version"] = config.protocol_version

        cluster = Cluster(**cluster_kwargs)

        # Per-host pool sizing only exists for protocol v1/v2
        if config.protocol_version is not None and config.protocol_version < 3:
            cluster.set_core_connections_per_host(HostDistance.LOCAL, config.pool.local.min)
            cluster.set_max_connections_per_host(HostDistance.LOCAL, config.pool.local.max)
            cluster.set_core_connections_per_host(HostDistance.REMOTE, config.pool.remote.min)
            cluster.set_max_connections_per_host(HostDistance.REMOTE, config.pool.remote.max)
        else:
            logger.debug("Protocol v3+ multiplexes one connection per host; pool limits not applied")

        return cluster

    def open(self, routing_key: str, config: DriverConfig) -> ClusterTransport:
        """
        Build a cluster for ``routing_key`` and connect a session to the keyspace.

        Raises:
            DriverConnectionError: If TLS material, the cluster or the session
                cannot be set up
        """
        try:
            cluster = self.build_cluster(routing_key, config)
        except Exception as e:
            raise DriverConnectionError("Failed to build cluster", original_error=e, routing_key=routing_key)

        try:
            session = cluster.connect(config.keyspace)
        except Exception as e:
            cluster.shutdown()
            raise DriverConnectionError(
                f"Failed to open session to keyspace '{config.keyspace}'",
                original_error=e,
                routing_key=routing_key,
            )

        logger.info(f"Opened new session in {routing_key} to {config.keyspace}")
        return ClusterTransport(routing_key, cluster, session)
