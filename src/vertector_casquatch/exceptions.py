"""
Error hierarchy for the Casquatch driver.

Every facade call either returns a typed result or raises one of the
exceptions below. Cassandra driver exceptions raised while talking to a
cluster are wrapped with context by ``translate_driver_error``.
"""

import logging
from typing import Any

from cassandra import (
    AuthenticationFailed,
    CoordinationFailure,
    DriverException,
    InvalidRequest,
    OperationTimedOut,
    ReadTimeout,
    RequestExecutionException,
    Unauthorized,
    Unavailable,
    WriteTimeout,
)
from cassandra.cluster import NoHostAvailable

logger = logging.getLogger(__name__)


class CasquatchError(Exception):
    """
    Root of every error raised by the driver facade.

    ``original_error`` keeps the driver or I/O exception that triggered this
    one. Construction logs the error: at ERROR with the cause attached when
    there is one, at WARNING otherwise.
    """

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self._log()

    def _log(self) -> None:
        name = type(self).__name__
        if self.original_error is None:
            logger.warning(f"{name}: {self.message}")
            return
        cause = self.original_error
        logger.error(
            f"{name}: {self.message}",
            exc_info=cause,
            extra={"cause_type": type(cause).__name__, "cause": str(cause)},
        )

    def __str__(self) -> str:
        cause = self.original_error
        if cause is None:
            return self.message
        return f"{self.message} (caused by {type(cause).__name__}: {cause})"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, original_error={self.original_error!r})"


class ConfigurationError(CasquatchError):
    """
    Raised when a required setting is missing or inconsistent.

    Fatal: raised while building the configuration or the driver, before
    any connection is attempted. Never retried.
    """


class DriverConnectionError(CasquatchError):
    """
    Raised when a transport handle cannot be constructed or no hosts are available.

    The failing routing key is not cached, so a later call may retry.
    """

    def __init__(
        self,
        message: str = "Failed to connect to Cassandra cluster",
        original_error: Exception | None = None,
        routing_key: str | None = None,
    ):
        self.routing_key = routing_key
        if routing_key:
            message = f"{message} [routing key: {routing_key}]"
        super().__init__(message, original_error)


class FeatureDisabledError(CasquatchError):
    """Raised when search or routing overrides are used while toggled off."""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Feature '{feature}' is disabled")


class BindingError(CasquatchError):
    """
    Raised when a declared field cannot be bound.

    Covers key fields missing from an entity instance, entity registrations
    naming unknown fields, and consistency names that do not parse.
    """

    def __init__(self, message: str, field: str | None = None, original_error: Exception | None = None):
        self.field = field
        if field:
            message = f"Binding error for '{field}': {message}"
        super().__init__(message, original_error)


class InvalidArgumentError(CasquatchError):
    """Raised for unknown operation kinds, non-positive limits, incomplete keys and similar."""

    def __init__(self, message: str, argument: str | None = None, value: Any = None):
        self.argument = argument
        self.value = value
        if argument:
            message = f"Invalid argument '{argument}': {message}"
        super().__init__(message)


class QueryExecutionError(CasquatchError):
    """
    Raised when the cluster rejects or fails to execute a statement.

    Includes coordination failures, invalid requests and other request
    execution errors reported by the cluster.
    """


class QueryTimeoutError(CasquatchError):
    """Raised when the coordinator or the client gave up waiting for replicas."""

    def __init__(
        self,
        message: str = "Operation timed out",
        original_error: Exception | None = None,
        operation_type: str | None = None,
    ):
        self.operation_type = operation_type
        message = f"{message} (operation={operation_type})" if operation_type else message
        super().__init__(message, original_error)


class ReplicaUnavailableError(CasquatchError):
    """Raised when too few live replicas exist for the requested consistency level."""

    def __init__(
        self,
        message: str = "Required replicas unavailable",
        original_error: Exception | None = None,
        consistency_level: str | None = None,
        required_replicas: int | None = None,
        alive_replicas: int | None = None,
    ):
        self.consistency_level = consistency_level
        self.required_replicas = required_replicas
        self.alive_replicas = alive_replicas

        parts = [f"consistency={consistency_level}"] if consistency_level else []
        if None not in (required_replicas, alive_replicas):
            parts.append(f"required={required_replicas}, alive={alive_replicas}")
        if parts:
            message = f"{message} ({', '.join(parts)})"

        super().__init__(message, original_error)


class AuthenticationError(CasquatchError):
    """Raised when authentication or authorization fails."""


def translate_driver_error(error: Exception, operation: str) -> CasquatchError:
    """
    Map an exception raised by the Cassandra driver to the Casquatch hierarchy.

    Args:
        error: Exception raised while executing ``operation``
        operation: Name of the facade operation, used in the message

    Returns:
        The matching ``CasquatchError``; Casquatch errors are returned unchanged
    """
    if isinstance(error, CasquatchError):
        return error

    if isinstance(error, NoHostAvailable):
        return DriverConnectionError(f"No hosts available for {operation}", original_error=error)

    if isinstance(error, (ReadTimeout, WriteTimeout)):
        kind = "read" if isinstance(error, ReadTimeout) else "write"
        return QueryTimeoutError(f"{kind.capitalize()} timed out during {operation}", error, operation_type=kind)

    if isinstance(error, OperationTimedOut):
        return QueryTimeoutError(f"Client-side timeout during {operation}", error, operation_type=operation)

    if isinstance(error, Unavailable):
        consistency = getattr(error, "consistency", None)
        return ReplicaUnavailableError(
            f"Required replicas unavailable during {operation}",
            original_error=error,
            consistency_level=str(consistency) if consistency is not None else None,
            required_replicas=getattr(error, "required_replicas", None),
            alive_replicas=getattr(error, "alive_replicas", None),
        )

    if isinstance(error, (Unauthorized, AuthenticationFailed)):
        return AuthenticationError(f"Authentication or authorization failed during {operation}", error)

    if isinstance(error, (InvalidRequest, CoordinationFailure, RequestExecutionException)):
        return QueryExecutionError(f"Query failed during {operation}", error)

    if isinstance(error, DriverException):
        return CasquatchError(f"Driver error during {operation}", error)

    return CasquatchError(f"Unexpected error during {operation}", error)
