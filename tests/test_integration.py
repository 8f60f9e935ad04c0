"""
Integration tests against a live cluster.

Run with CASQUATCH_INTEGRATION=1; connection settings come from the
CASQUATCH_* environment variables (see ``live_config`` in conftest).
"""

import uuid
from typing import Optional

import pytest
from pydantic import BaseModel

from vertector_casquatch import CassandraDriver, table


@table("casquatch_items", partition_keys=("bucket",), clustering_keys=("item_id",))
class Item(BaseModel):
    bucket: Optional[str] = None
    item_id: Optional[uuid.UUID] = None
    label: Optional[str] = None


@pytest.fixture(scope="module")
def live_driver(live_config):
    driver = CassandraDriver(live_config)
    driver.execute(
        f"CREATE TABLE IF NOT EXISTS {live_config.keyspace}.casquatch_items "
        "(bucket text, item_id uuid, label text, PRIMARY KEY (bucket, item_id))"
    )
    driver.execute(
        f"CREATE TABLE IF NOT EXISTS {live_config.keyspace}.{live_config.routing_table} "
        "(table_name text PRIMARY KEY, data_center text, read_consistency text, write_consistency text)"
    )
    yield driver
    driver.close()


@pytest.mark.integration
class TestLiveCluster:

    def test_health_check(self, live_driver):
        assert live_driver.health_check()["status"] == "healthy"

    def test_round_trip(self, live_driver):
        bucket = f"b-{uuid.uuid4().hex[:8]}"
        item = Item(bucket=bucket, item_id=uuid.uuid4(), label="first")

        live_driver.save(item)
        assert live_driver.get_by_id(Item(bucket=bucket, item_id=item.item_id)) == item
        assert [i.item_id for i in live_driver.get_all_by_id(Item(bucket=bucket))] == [item.item_id]

        live_driver.delete(item)
        assert not live_driver.exists_by_id(item)

    @pytest.mark.asyncio
    async def test_async_save(self, live_driver):
        item = Item(bucket="async", item_id=uuid.uuid4(), label="async")
        await live_driver.asave(item)
        assert live_driver.exists_by_id(item)
        await live_driver.adelete(item)
