"""
Connection registry: one lazily opened transport handle per routing key.

Handles are opened on first use and cached for the lifetime of the
registry. Concurrent first access for the same key opens exactly one
handle; the other callers wait on that key's lock and receive the
published handle. Opening a handle for one key never blocks callers of
another key.
"""

import logging
import threading

from vertector_casquatch.config import DriverConfig
from vertector_casquatch.exceptions import CasquatchError, DriverConnectionError, InvalidArgumentError
from vertector_casquatch.logging_utils import PerformanceLogger
from vertector_casquatch.transport import TransportHandle, TransportProvider

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    Per-driver cache of transport handles keyed by routing key.

    Example:
        registry = ConnectionRegistry(config, ClusterTransportProvider())
        handle = registry.handle_for("east")
        assert registry.handle_for("east") is handle
        registry.close()
    """

    def __init__(self, config: DriverConfig, provider: TransportProvider):
        self.config = config
        self.provider = provider
        self._handles: dict[str, TransportHandle] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def keys(self) -> list[str]:
        """Routing keys with a published handle."""
        with self._lock:
            return list(self._handles)

    def handle_for(self, routing_key: str) -> TransportHandle:
        """
        Return the handle for ``routing_key``, opening it on first use.

        Raises:
            InvalidArgumentError: If the routing key is empty
            DriverConnectionError: If the registry is closed or the handle
                cannot be opened; nothing is cached on failure
        """
        if not isinstance(routing_key, str) or not routing_key:
            raise InvalidArgumentError("routing key must be a non-empty string", argument="routing_key", value=routing_key)

        handle = self._handles.get(routing_key)
        if handle is not None:
            return handle

        with self._lock:
            if self._closed:
                raise DriverConnectionError("Connection registry is closed", routing_key=routing_key)
            key_lock = self._key_locks.setdefault(routing_key, threading.Lock())

        with key_lock:
            handle = self._handles.get(routing_key)
            if handle is not None:
                return handle

            if self._closed:
                raise DriverConnectionError("Connection registry is closed", routing_key=routing_key)

            handle = self._open(routing_key)

            with self._lock:
                if not self._closed:
                    self._handles[routing_key] = handle
                    return handle

            # Shutdown began while the handle was opening
            self._close_handle(routing_key, handle)
            raise DriverConnectionError("Connection registry closed while opening handle", routing_key=routing_key)

    def _open(self, routing_key: str) -> TransportHandle:
        try:
            with PerformanceLogger("open_transport", logger=logger, routing_key=routing_key):
                return self.provider.open(routing_key, self.config)
        except CasquatchError:
            raise
        except Exception as e:
            raise DriverConnectionError(original_error=e, routing_key=routing_key) from e

    def _close_handle(self, routing_key: str, handle: TransportHandle) -> None:
        try:
            handle.close()
        except Exception as e:
            logger.warning(f"Error closing transport handle for {routing_key}: {e}")

    def close(self) -> None:
        """
        Close every cached handle exactly once.

        Later calls are no-ops. New ``handle_for`` calls fail once closing has
        begun. A handle whose ``close()`` raises is logged and skipped.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles = list(self._handles.items())
            self._handles.clear()

        for routing_key, handle in handles:
            self._close_handle(routing_key, handle)

        logger.info(f"Closed {len(handles)} transport handle(s)")
