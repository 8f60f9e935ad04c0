"""
Configuration management for the Casquatch driver.

This module provides:
- Pydantic-based, immutable driver configuration with documented defaults
- Required-field validation (contact points, keyspace, local datacenter)
- Credential masking through ``SecretStr``
- Loading from environment variables and ``.env`` files
- Secret resolution (environment variables, AWS Secrets Manager)
"""

import os
import json
import logging
from enum import Enum
from typing import Literal, Optional

from cassandra import ConsistencyLevel
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from vertector_casquatch.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_ROUTING_KEY = "default"


# ============================================================================
# Secrets
# ============================================================================

class SecretsProvider(str, Enum):
    """Supported secrets management providers."""
    ENV = "env"
    AWS_SECRETS_MANAGER = "aws_secrets_manager"


def resolve_secret(secret_name: str, provider: SecretsProvider = SecretsProvider.ENV) -> str:
    """
    Retrieve a secret value from the configured provider.

    Args:
        secret_name: Environment variable name or AWS secret id
        provider: Where to look the secret up

    Returns:
        Secret value

    Raises:
        ConfigurationError: If the secret cannot be found
    """
    if provider == SecretsProvider.ENV:
        value = os.getenv(secret_name)
        if value is None:
            raise ConfigurationError(f"Secret '{secret_name}' not found in environment variables")
        return value

    try:
        import boto3
        from botocore.exceptions import ClientError
    except ImportError as e:
        raise ConfigurationError(
            "AWS Secrets Manager requires boto3. Install with: pip install boto3",
            original_error=e,
        )

    try:
        response = boto3.client("secretsmanager").get_secret_value(SecretId=secret_name)
    except ClientError as e:
        raise ConfigurationError(f"Failed to retrieve secret '{secret_name}'", original_error=e)

    secret_value = response.get("SecretString")
    if secret_value is None:
        raise ConfigurationError(f"Secret '{secret_name}' has no string value")

    # JSON secrets carry the password under a "password" key
    try:
        parsed = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value
    if isinstance(parsed, dict) and "password" in parsed:
        return parsed["password"]
    return secret_value


# ============================================================================
# Configuration Models
# ============================================================================

class ClusterTopology(str, Enum):
    """How the ``default`` connection treats datacenters other than the local one."""
    SINGLE_DC = "single-dc"
    HIGH_AVAILABILITY = "high-availability"


class AuthConfig(BaseModel):
    """Credentials used by every transport handle."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(
        default="cassandra",
        description="Database username"
    )

    password: SecretStr = Field(
        default=SecretStr("cassandra"),
        description="Database password (masked in every representation)"
    )


class TLSConfig(BaseModel):
    """TLS settings for node-to-client encryption."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(
        default=False,
        description="Enable TLS for client connections"
    )

    truststore_path: Optional[str] = Field(
        default=None,
        description="PEM bundle of trusted CA certificates; system defaults when unset"
    )

    verify_mode: Literal["CERT_NONE", "CERT_OPTIONAL", "CERT_REQUIRED"] = Field(
        default="CERT_REQUIRED",
        description="Certificate verification mode"
    )

    @field_validator("truststore_path")
    @classmethod
    def validate_truststore_exists(cls, v):
        """Validate that the truststore file exists."""
        if v is not None and not os.path.exists(v):
            raise ValueError(f"Truststore file not found: {v}")
        return v


class ConnectionLimit(BaseModel):
    """Minimum and maximum connections per host for one host distance."""

    model_config = ConfigDict(frozen=True)

    min: int = Field(default=1, ge=1, le=128)
    max: int = Field(default=1, ge=1, le=128)

    @model_validator(mode="after")
    def validate_bounds(self):
        """Validate that min does not exceed max."""
        if self.min > self.max:
            raise ValueError("min connections cannot exceed max connections")
        return self


class PoolConfig(BaseModel):
    """Connection pool sizing for local and remote datacenters."""

    model_config = ConfigDict(frozen=True)

    local: ConnectionLimit = Field(
        default_factory=lambda: ConnectionLimit(min=1, max=3),
        description="Connections per host in the local datacenter"
    )

    remote: ConnectionLimit = Field(
        default_factory=lambda: ConnectionLimit(min=1, max=1),
        description="Connections per host in remote datacenters"
    )

    remote_hosts_per_dc: int = Field(
        default=2,
        ge=0,
        le=64,
        description="Remote hosts per datacenter used by the high-availability topology"
    )


class TimeoutConfig(BaseModel):
    """Socket timeouts in milliseconds."""

    model_config = ConfigDict(frozen=True)

    read_ms: int = Field(default=500, ge=1, description="Per-request read timeout")
    connect_ms: int = Field(default=12000, ge=1, description="Connection establishment timeout")


class ReconnectionConfig(BaseModel):
    """Exponential reconnection backoff bounds in milliseconds."""

    model_config = ConfigDict(frozen=True)

    delay_ms: int = Field(default=500, ge=1)
    max_delay_ms: int = Field(default=300000, ge=1)

    @model_validator(mode="after")
    def validate_bounds(self):
        """Validate that the base delay does not exceed the maximum delay."""
        if self.delay_ms > self.max_delay_ms:
            raise ValueError("delay_ms cannot exceed max_delay_ms")
        return self


class SpeculativeExecutionConfig(BaseModel):
    """Constant speculative execution for idempotent reads."""

    model_config = ConfigDict(frozen=True)

    delay_ms: int = Field(default=500, ge=0)
    attempts: int = Field(default=2, ge=0, le=10)


class FeatureConfig(BaseModel):
    """Feature toggles."""

    model_config = ConfigDict(frozen=True)

    routing_overrides: bool = Field(
        default=True,
        description="Resolve datacenter and consistency per table from the routing table"
    )

    search: bool = Field(
        default=True,
        description="Allow full-text search queries against the search datacenter"
    )


class DriverConfig(BaseModel):
    """
    Complete, immutable configuration for ``CassandraDriver``.

    Contact points, keyspace and local datacenter are required; every other
    setting has a documented default.

    Example usage:
        config = DriverConfig(
            contact_points=["cass1.example.com", "cass2.example.com"],
            keyspace="orders",
            local_dc="east",
            auth=AuthConfig(username="svc_orders", password="..."),
            features=FeatureConfig(search=False),
        )

        driver = CassandraDriver(config)
    """

    model_config = ConfigDict(frozen=True)

    # Connection settings
    contact_points: list[str] = Field(
        default_factory=lambda: ["localhost"],
        description="Cassandra contact points (list or comma separated string)"
    )

    port: int = Field(
        default=9042,
        ge=1,
        le=65535,
        description="Native transport port"
    )

    local_dc: str = Field(
        default="",
        description="Datacenter considered local by the default connection"
    )

    keyspace: str = Field(
        default="",
        description="Keyspace every session connects to"
    )

    topology: ClusterTopology = Field(
        default=ClusterTopology.HIGH_AVAILABILITY,
        description="Topology mode applied to the default connection"
    )

    protocol_version: Optional[int] = Field(
        default=None,
        ge=1,
        le=5,
        description="Native protocol version; negotiated by the driver when unset"
    )

    # Security
    auth: AuthConfig = Field(default_factory=AuthConfig)
    tls: TLSConfig = Field(default_factory=TLSConfig)

    # Performance and resilience
    pool: PoolConfig = Field(default_factory=PoolConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    reconnection: ReconnectionConfig = Field(default_factory=ReconnectionConfig)
    speculative_execution: SpeculativeExecutionConfig = Field(default_factory=SpeculativeExecutionConfig)

    # Routing and behavior
    default_consistency: str = Field(
        default="LOCAL_QUORUM",
        description="Consistency used when no routing override applies"
    )

    features: FeatureConfig = Field(default_factory=FeatureConfig)

    search_dc: str = Field(
        default="search",
        description="Datacenter serving full-text search queries"
    )

    save_nulls: bool = Field(
        default=False,
        description="Persist None fields as nulls instead of omitting them"
    )

    routing_table: str = Field(
        default="driver_config",
        description="Administrative table holding per-table routing overrides"
    )

    @field_validator("contact_points", mode="before")
    @classmethod
    def split_contact_points(cls, v):
        """Accept a comma separated string and drop blank entries."""
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [cp.strip() for cp in v if isinstance(cp, str) and cp.strip()]
        return v

    @field_validator("default_consistency")
    @classmethod
    def validate_default_consistency(cls, v):
        """Validate and normalize the default consistency name."""
        name = v.strip().upper()
        if name not in ConsistencyLevel.name_to_value:
            raise ValueError(f"Unknown consistency level: {v}")
        return name

    @model_validator(mode="after")
    def check_required(self):
        """Reject configurations missing a required setting."""
        self.validate_required()
        return self

    def validate_required(self) -> bool:
        """
        Check required settings in order: contact points, keyspace, local datacenter.

        Returns:
            True when the configuration is usable

        Raises:
            ConfigurationError: Naming the first missing setting
        """
        if not self.contact_points:
            raise ConfigurationError("Contact points are required")

        if not self.keyspace or not self.keyspace.strip():
            raise ConfigurationError("Keyspace is required")

        if not self.local_dc or not self.local_dc.strip():
            raise ConfigurationError("Local datacenter is required")

        return True

    @property
    def default_consistency_level(self) -> int:
        """Default consistency as a ``cassandra.ConsistencyLevel`` constant."""
        return ConsistencyLevel.name_to_value[self.default_consistency]


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(dotenv_path: Optional[str] = None) -> DriverConfig:
    """
    Load configuration from environment variables (and a ``.env`` file if present).

    Environment variables:
        CASQUATCH_CONTACT_POINTS: Comma-separated list of contact points
        CASQUATCH_PORT: Port (default: 9042)
        CASQUATCH_KEYSPACE: Keyspace name (required)
        CASQUATCH_LOCAL_DC: Local datacenter (required)
        CASQUATCH_USERNAME: Database username
        CASQUATCH_PASSWORD: Database password (not recommended - use secret)
        CASQUATCH_PASSWORD_SECRET: Secret name for password
        CASQUATCH_SECRETS_PROVIDER: Secrets provider (env, aws_secrets_manager)
        CASQUATCH_TOPOLOGY: single-dc or high-availability
        CASQUATCH_DEFAULT_CONSISTENCY: Default consistency level
        CASQUATCH_ROUTING_OVERRIDES: Enable routing overrides (true/false)
        CASQUATCH_SEARCH: Enable full-text search (true/false)
        CASQUATCH_SEARCH_DC: Search datacenter
        CASQUATCH_SAVE_NULLS: Persist null fields (true/false)
        CASQUATCH_TLS_ENABLED: Enable TLS (true/false)
        CASQUATCH_TLS_TRUSTSTORE: Path to CA bundle

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If a required setting is missing
    """
    load_dotenv(dotenv_path)

    auth_kwargs = {}
    if os.getenv("CASQUATCH_USERNAME"):
        auth_kwargs["username"] = os.getenv("CASQUATCH_USERNAME")

    password_secret = os.getenv("CASQUATCH_PASSWORD_SECRET")
    if password_secret:
        provider = SecretsProvider(os.getenv("CASQUATCH_SECRETS_PROVIDER", "env"))
        auth_kwargs["password"] = resolve_secret(password_secret, provider)
    elif os.getenv("CASQUATCH_PASSWORD"):
        auth_kwargs["password"] = os.getenv("CASQUATCH_PASSWORD")

    config = DriverConfig(
        contact_points=os.getenv("CASQUATCH_CONTACT_POINTS", "localhost"),
        port=int(os.getenv("CASQUATCH_PORT", "9042")),
        keyspace=os.getenv("CASQUATCH_KEYSPACE", ""),
        local_dc=os.getenv("CASQUATCH_LOCAL_DC", ""),
        topology=ClusterTopology(os.getenv("CASQUATCH_TOPOLOGY", ClusterTopology.HIGH_AVAILABILITY.value)),
        default_consistency=os.getenv("CASQUATCH_DEFAULT_CONSISTENCY", "LOCAL_QUORUM"),
        auth=AuthConfig(**auth_kwargs),
        tls=TLSConfig(
            enabled=_env_flag("CASQUATCH_TLS_ENABLED", False),
            truststore_path=os.getenv("CASQUATCH_TLS_TRUSTSTORE"),
        ),
        features=FeatureConfig(
            routing_overrides=_env_flag("CASQUATCH_ROUTING_OVERRIDES", True),
            search=_env_flag("CASQUATCH_SEARCH", True),
        ),
        search_dc=os.getenv("CASQUATCH_SEARCH_DC", "search"),
        save_nulls=_env_flag("CASQUATCH_SAVE_NULLS", False),
    )

    logger.info(f"Loaded driver configuration from environment: {config!r}")
    return config
