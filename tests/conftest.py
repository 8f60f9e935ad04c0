"""
Pytest configuration and fixtures for Casquatch tests.

Provides:
- An in-memory transport provider that counts handle constructions
- An in-memory routing table store
- Driver fixtures wired to both
- Live cluster settings for integration tests
"""

import os
import threading
import time
from collections import Counter
from concurrent.futures import Future

import pytest
from dotenv import load_dotenv

from vertector_casquatch import CassandraDriver, DriverConfig, OverrideRecord

# Load environment variables for tests
load_dotenv()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a Cassandra cluster)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless CASQUATCH_INTEGRATION=1."""
    if os.getenv("CASQUATCH_INTEGRATION") == "1":
        return
    skip = pytest.mark.skip(reason="set CASQUATCH_INTEGRATION=1 to run against a live cluster")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


# ============================================================================
# In-memory transport
# ============================================================================

class FakeDatabase:
    """Rows shared by every fake handle, keyed by (keyspace, table)."""

    def __init__(self, primary_keys: dict[str, tuple[str, ...]] | None = None):
        self.primary_keys = primary_keys or {}
        self.tables: dict[tuple[str, str], list[dict]] = {}
        self.search_results: dict[str, list[dict]] = {}
        self.raw_results: dict[str, list[dict]] = {}
        self._lock = threading.Lock()

    def rows(self, keyspace, table):
        return self.tables.setdefault((keyspace, table), [])

    def matching(self, keyspace, table, filters):
        return [
            row for row in self.rows(keyspace, table)
            if all(row.get(f.column) == f.value for f in filters)
        ]

    def upsert(self, keyspace, table, values):
        key_columns = self.primary_keys.get(table, ())
        with self._lock:
            rows = self.rows(keyspace, table)
            for row in rows:
                if key_columns and all(row.get(c) == values.get(c) for c in key_columns):
                    row.update(values)
                    return
            rows.append(dict(values))

    def delete(self, keyspace, table, filters):
        with self._lock:
            self.tables[(keyspace, table)] = [
                row for row in self.rows(keyspace, table)
                if not all(row.get(f.column) == f.value for f in filters)
            ]


class FakeHandle:
    """TransportHandle over a FakeDatabase that records every call."""

    def __init__(self, routing_key, database, fail_on_close=False):
        self.routing_key = routing_key
        self.database = database
        self.fail_on_close = fail_on_close
        self.calls = []
        self.close_count = 0

    def _completed(self):
        future = Future()
        future.set_result(None)
        return future

    def select(self, keyspace, table, filters, consistency, limit=None):
        self.calls.append(("select", keyspace, table, tuple(filters), consistency))
        rows = self.database.matching(keyspace, table, filters)
        return [dict(r) for r in (rows[:limit] if limit else rows)]

    def fetch(self, keyspace, table, key_filters, consistency):
        self.calls.append(("fetch", keyspace, table, tuple(key_filters), consistency))
        rows = self.database.matching(keyspace, table, key_filters)
        return dict(rows[0]) if rows else None

    def upsert(self, keyspace, table, values, consistency):
        self.calls.append(("upsert", keyspace, table, dict(values), consistency))
        self.database.upsert(keyspace, table, values)

    def upsert_async(self, keyspace, table, values, consistency):
        self.upsert(keyspace, table, values, consistency)
        return self._completed()

    def delete(self, keyspace, table, key_filters, consistency):
        self.calls.append(("delete", keyspace, table, tuple(key_filters), consistency))
        self.database.delete(keyspace, table, key_filters)

    def delete_async(self, keyspace, table, key_filters, consistency):
        self.delete(keyspace, table, key_filters, consistency)
        return self._completed()

    def search(self, keyspace, table, query, limit, consistency):
        self.calls.append(("search", keyspace, table, query, consistency))
        return [dict(r) for r in self.database.search_results.get(table, [])[:limit]]

    def count(self, keyspace, table, query, consistency):
        self.calls.append(("count", keyspace, table, query, consistency))
        return len(self.database.search_results.get(table, []))

    def execute(self, cql, parameters=None):
        self.calls.append(("execute", cql))
        return [dict(r) for r in self.database.raw_results.get(cql, [])]

    def close(self):
        self.close_count += 1
        if self.fail_on_close:
            raise RuntimeError(f"close failed for {self.routing_key}")


class FakeTransportProvider:
    """
    TransportProvider that builds FakeHandles and counts constructions per key.

    ``fail_keys`` makes ``open`` raise for those keys; ``open_delay`` widens
    the window for concurrent first access.
    """

    def __init__(self, database=None, fail_keys=(), open_delay=0.0, fail_on_close=()):
        self.database = database or FakeDatabase()
        self.fail_keys = set(fail_keys)
        self.open_delay = open_delay
        self.fail_on_close = set(fail_on_close)
        self.opens = Counter()
        self.handles: dict[str, list[FakeHandle]] = {}
        self._lock = threading.Lock()

    def open(self, routing_key, config):
        with self._lock:
            self.opens[routing_key] += 1
        if self.open_delay:
            time.sleep(self.open_delay)
        if routing_key in self.fail_keys:
            raise OSError(f"cannot reach datacenter {routing_key}")
        handle = FakeHandle(routing_key, self.database, fail_on_close=routing_key in self.fail_on_close)
        with self._lock:
            self.handles.setdefault(routing_key, []).append(handle)
        return handle

    def handle(self, routing_key):
        """The single handle built for ``routing_key``."""
        (handle,) = self.handles[routing_key]
        return handle


class InMemoryRoutingStore:
    """RoutingTableStore over a dict; counts fetches and can be made to fail."""

    def __init__(self, records=()):
        self.records = {record.table_name: record for record in records}
        self.fetches = Counter()
        self.fail = False

    def fetch(self, table):
        self.fetches[table] += 1
        if self.fail:
            raise RuntimeError("routing table unavailable")
        return self.records.get(table)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def config():
    """Minimal valid configuration."""
    return DriverConfig(contact_points=["127.0.0.1"], keyspace="shop", local_dc="east")


@pytest.fixture
def fake_db():
    return FakeDatabase(primary_keys={
        "orders": ("customer_id", "order_id"),
        "customers": ("customer_id",),
    })


@pytest.fixture
def provider(fake_db):
    return FakeTransportProvider(database=fake_db)


@pytest.fixture
def routing_store():
    return InMemoryRoutingStore([
        OverrideRecord(
            table_name="orders",
            datacenter="west",
            read_consistency="ONE",
            write_consistency="QUORUM",
        ),
    ])


@pytest.fixture
def driver(config, provider, routing_store):
    """Driver over the in-memory transport and routing store."""
    driver = CassandraDriver(config, transport_provider=provider, routing_store=routing_store)
    yield driver
    driver.close()


@pytest.fixture(scope="session")
def live_config():
    """
    Configuration for a live cluster, from CASQUATCH_* environment variables.

    Defaults target a single local node in datacenter1.
    """
    return DriverConfig(
        contact_points=os.getenv("CASQUATCH_CONTACT_POINTS", "127.0.0.1"),
        keyspace=os.getenv("CASQUATCH_KEYSPACE", "casquatch_test"),
        local_dc=os.getenv("CASQUATCH_LOCAL_DC", "datacenter1"),
        topology="single-dc",
    )
