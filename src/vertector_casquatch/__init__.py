"""
Vertector Casquatch - datacenter-aware Cassandra access layer.

This package routes each table's reads and writes to the datacenter and
consistency level named in an administrative routing table, over lazily
opened per-datacenter connections.
"""

from vertector_casquatch.driver import CassandraDriver

from vertector_casquatch.config import (
    DEFAULT_ROUTING_KEY,
    DriverConfig,
    AuthConfig,
    TLSConfig,
    ConnectionLimit,
    PoolConfig,
    TimeoutConfig,
    ReconnectionConfig,
    SpeculativeExecutionConfig,
    FeatureConfig,
    ClusterTopology,
    SecretsProvider,
    resolve_secret,
    load_config_from_env,
)

from vertector_casquatch.exceptions import (
    CasquatchError,
    ConfigurationError,
    DriverConnectionError,
    FeatureDisabledError,
    BindingError,
    InvalidArgumentError,
    QueryExecutionError,
    QueryTimeoutError,
    ReplicaUnavailableError,
    AuthenticationError,
)

from vertector_casquatch.entity import (
    EntityKeyDescriptor,
    EntityMetadata,
    KeyField,
    get_entity_metadata,
    table,
)

from vertector_casquatch.filters import EqualityFilter, build_key_filter, build_primary_key

from vertector_casquatch.routing import (
    OverrideRecord,
    OperationKind,
    Route,
    RoutingTableStore,
    RoutingTableCache,
    RoutingResolver,
)

from vertector_casquatch.connections import ConnectionRegistry

from vertector_casquatch.transport import (
    TransportHandle,
    TransportProvider,
    ClusterTransport,
    ClusterTransportProvider,
)

from vertector_casquatch.consistency import parse_consistency, consistency_name

from vertector_casquatch.observability import Tracer, EnhancedMetrics

__version__ = "1.0.0"

__all__ = [
    # Driver
    "CassandraDriver",
    # Configuration
    "DEFAULT_ROUTING_KEY",
    "DriverConfig",
    "AuthConfig",
    "TLSConfig",
    "ConnectionLimit",
    "PoolConfig",
    "TimeoutConfig",
    "ReconnectionConfig",
    "SpeculativeExecutionConfig",
    "FeatureConfig",
    "ClusterTopology",
    "SecretsProvider",
    "resolve_secret",
    "load_config_from_env",
    # Errors
    "CasquatchError",
    "ConfigurationError",
    "DriverConnectionError",
    "FeatureDisabledError",
    "BindingError",
    "InvalidArgumentError",
    "QueryExecutionError",
    "QueryTimeoutError",
    "ReplicaUnavailableError",
    "AuthenticationError",
    # Entities
    "EntityKeyDescriptor",
    "EntityMetadata",
    "KeyField",
    "get_entity_metadata",
    "table",
    "EqualityFilter",
    "build_key_filter",
    "build_primary_key",
    # Routing
    "OverrideRecord",
    "OperationKind",
    "Route",
    "RoutingTableStore",
    "RoutingTableCache",
    "RoutingResolver",
    "ConnectionRegistry",
    # Transport
    "TransportHandle",
    "TransportProvider",
    "ClusterTransport",
    "ClusterTransportProvider",
    # Consistency
    "parse_consistency",
    "consistency_name",
    # Observability
    "Tracer",
    "EnhancedMetrics",
]
