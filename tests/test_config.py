"""
Tests for config module (Pydantic models, validation, secrets, env loading).
"""

import os
from unittest.mock import patch

import pytest
from cassandra import ConsistencyLevel
from pydantic import SecretStr, ValidationError

from vertector_casquatch.config import (
    AuthConfig,
    ClusterTopology,
    ConnectionLimit,
    DriverConfig,
    ReconnectionConfig,
    SecretsProvider,
    TLSConfig,
    load_config_from_env,
    resolve_secret,
)
from vertector_casquatch.exceptions import ConfigurationError


def make_config(**overrides):
    values = {"contact_points": ["10.0.0.1"], "keyspace": "shop", "local_dc": "east"}
    values.update(overrides)
    return DriverConfig(**values)


# ============================================================================
# Secrets
# ============================================================================

@pytest.mark.unit
class TestResolveSecret:
    """Test secret resolution."""

    def test_env_provider_success(self):
        with patch.dict(os.environ, {"MY_SECRET": "secret_value"}):
            assert resolve_secret("MY_SECRET") == "secret_value"

    def test_env_provider_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                resolve_secret("NONEXISTENT_SECRET", SecretsProvider.ENV)
        assert "not found in environment" in str(exc_info.value)


# ============================================================================
# Nested models
# ============================================================================

@pytest.mark.unit
class TestNestedModels:
    """Test validation of nested configuration models."""

    def test_connection_limit_min_above_max(self):
        with pytest.raises(ValidationError):
            ConnectionLimit(min=4, max=2)

    def test_reconnection_delay_above_max(self):
        with pytest.raises(ValidationError):
            ReconnectionConfig(delay_ms=1000, max_delay_ms=10)

    def test_truststore_must_exist(self, tmp_path):
        with pytest.raises(ValidationError):
            TLSConfig(enabled=True, truststore_path=str(tmp_path / "missing.pem"))

    def test_truststore_existing_file(self, tmp_path):
        bundle = tmp_path / "ca.pem"
        bundle.write_text("-----BEGIN CERTIFICATE-----\n")
        tls = TLSConfig(enabled=True, truststore_path=str(bundle))
        assert tls.truststore_path == str(bundle)

    def test_password_is_masked(self):
        auth = AuthConfig(username="svc", password="hunter2")
        assert "hunter2" not in repr(auth)
        assert "hunter2" not in str(auth)
        assert "hunter2" not in str(auth.model_dump())
        assert auth.password.get_secret_value() == "hunter2"


# ============================================================================
# DriverConfig
# ============================================================================

@pytest.mark.unit
class TestDriverConfig:
    """Test the top-level configuration."""

    def test_documented_defaults(self):
        config = make_config()

        assert config.port == 9042
        assert config.default_consistency == "LOCAL_QUORUM"
        assert config.default_consistency_level == ConsistencyLevel.LOCAL_QUORUM
        assert config.topology == ClusterTopology.HIGH_AVAILABILITY
        assert (config.pool.local.min, config.pool.local.max) == (1, 3)
        assert (config.pool.remote.min, config.pool.remote.max) == (1, 1)
        assert config.pool.remote_hosts_per_dc == 2
        assert config.speculative_execution.delay_ms == 500
        assert config.speculative_execution.attempts == 2
        assert config.timeouts.read_ms == 500
        assert config.timeouts.connect_ms == 12000
        assert config.reconnection.delay_ms == 500
        assert config.reconnection.max_delay_ms == 300000
        assert config.features.routing_overrides is True
        assert config.features.search is True
        assert config.search_dc == "search"
        assert config.save_nulls is False
        assert config.tls.enabled is False
        assert config.auth.username == "cassandra"

    def test_contact_point_default(self):
        config = DriverConfig(keyspace="shop", local_dc="east")
        assert config.contact_points == ["localhost"]

    def test_contact_points_from_string(self):
        config = make_config(contact_points="cass1, cass2 ,,cass3")
        assert config.contact_points == ["cass1", "cass2", "cass3"]

    def test_missing_contact_points(self):
        with pytest.raises(ConfigurationError, match="Contact points are required"):
            make_config(contact_points=[])

    def test_missing_keyspace(self):
        with pytest.raises(ConfigurationError, match="Keyspace is required"):
            make_config(keyspace="")

    def test_missing_local_dc(self):
        with pytest.raises(ConfigurationError, match="Local datacenter is required"):
            make_config(local_dc="")

    def test_first_missing_setting_is_reported(self):
        with pytest.raises(ConfigurationError, match="Keyspace is required"):
            make_config(keyspace="", local_dc="")

    def test_validate_required_on_valid_config(self):
        assert make_config().validate_required() is True

    def test_default_consistency_normalized(self):
        config = make_config(default_consistency="local_one")
        assert config.default_consistency == "LOCAL_ONE"
        assert config.default_consistency_level == ConsistencyLevel.LOCAL_ONE

    def test_unknown_default_consistency(self):
        with pytest.raises(ValidationError):
            make_config(default_consistency="SOMETIMES")

    def test_frozen(self):
        config = make_config()
        with pytest.raises(ValidationError):
            config.keyspace = "other"

    def test_repr_masks_password(self):
        config = make_config(auth=AuthConfig(username="svc", password=SecretStr("hunter2")))
        assert "hunter2" not in repr(config)
        assert "hunter2" not in str(config)


# ============================================================================
# Environment loading
# ============================================================================

@pytest.mark.unit
class TestLoadConfigFromEnv:
    """Test loading configuration from CASQUATCH_* variables."""

    def test_load_from_env(self, tmp_path):
        env = {
            "CASQUATCH_CONTACT_POINTS": "cass1,cass2",
            "CASQUATCH_PORT": "9142",
            "CASQUATCH_KEYSPACE": "shop",
            "CASQUATCH_LOCAL_DC": "east",
            "CASQUATCH_USERNAME": "svc",
            "CASQUATCH_PASSWORD": "pw",
            "CASQUATCH_TOPOLOGY": "single-dc",
            "CASQUATCH_DEFAULT_CONSISTENCY": "quorum",
            "CASQUATCH_SEARCH": "false",
            "CASQUATCH_SAVE_NULLS": "true",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config_from_env(dotenv_path=str(tmp_path / "absent.env"))

        assert config.contact_points == ["cass1", "cass2"]
        assert config.port == 9142
        assert config.auth.username == "svc"
        assert config.auth.password.get_secret_value() == "pw"
        assert config.topology == ClusterTopology.SINGLE_DC
        assert config.default_consistency == "QUORUM"
        assert config.features.search is False
        assert config.features.routing_overrides is True
        assert config.save_nulls is True

    def test_password_secret_takes_precedence(self, tmp_path):
        env = {
            "CASQUATCH_KEYSPACE": "shop",
            "CASQUATCH_LOCAL_DC": "east",
            "CASQUATCH_PASSWORD": "plain",
            "CASQUATCH_PASSWORD_SECRET": "DB_PASSWORD",
            "DB_PASSWORD": "from-secret",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config_from_env(dotenv_path=str(tmp_path / "absent.env"))

        assert config.auth.password.get_secret_value() == "from-secret"

    def test_load_from_dotenv_file(self, tmp_path):
        dotenv_file = tmp_path / ".env"
        dotenv_file.write_text("CASQUATCH_KEYSPACE=shop\nCASQUATCH_LOCAL_DC=west\n")
        with patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env(dotenv_path=str(dotenv_file))

        assert config.keyspace == "shop"
        assert config.local_dc == "west"

    def test_missing_required_env(self, tmp_path):
        with patch.dict(os.environ, {"CASQUATCH_KEYSPACE": "shop"}, clear=True):
            with pytest.raises(ConfigurationError, match="Local datacenter is required"):
                load_config_from_env(dotenv_path=str(tmp_path / "absent.env"))
