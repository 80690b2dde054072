import asyncio

import pytest

from devlab_indexer.broadcast import (
    GLOBAL_TOPIC, METRICS_UPDATE, NEW_BLOCK, NEW_EVENT, contract_topic,
)
from devlab_indexer.db import Storage
from devlab_indexer.errors import PersistenceError, UpstreamConnectionError, UpstreamUnavailable
from devlab_indexer.indexer import EventIngestor
from devlab_indexer.models import Metrics
from devlab_indexer.registry import ContractRegistry

from conftest import ERC20_ABI, GENESIS, OTHER, TOKEN, transfer_log


def drain(sub):
    out = []
    while not sub.queue.empty():
        out.append(sub.queue.get_nowait())
    return out


class FlakyStorage(Storage):
    """Fails every event write."""

    async def store_event(self, event):
        raise PersistenceError("disk full")


class TestProcessBlock:

    async def test_block_and_events_are_persisted(self, ingestor, connector, storage):
        connector.add_block(100, [transfer_log(100, 0), transfer_log(100, 1, address=OTHER)])
        connector.add_receipt(100, 0, gas_used=51_000)

        stored = await ingestor.process_block(100)

        assert stored == 1
        assert [b.block_number for b in await storage.get_blocks_by_range(100, 100)] == [100]
        (event,) = await storage.get_recent_events(TOKEN)
        assert event.event_name == "Transfer"
        assert event.gas_used == 51_000
        assert event.timestamp == connector.blocks[100].timestamp
        assert ingestor.metrics.total_events == 1
        assert ingestor.last_block == 100

    async def test_missing_receipt_leaves_gas_unknown(self, ingestor, connector, storage):
        connector.add_block(5, [transfer_log(5)])

        assert await ingestor.process_block(5) == 1
        (event,) = await storage.get_recent_events(TOKEN)
        assert event.gas_used is None
        assert ingestor.metrics.error_count == 0

    async def test_redelivery_keeps_distinct_rows(self, ingestor, connector, storage):
        for n in (1, 2):
            connector.add_block(n, [transfer_log(n)])
        for n in (1, 2, 2, 1, 2):
            await ingestor.process_block(n)

        assert len(await storage.get_blocks_by_range(0, 10)) == 2
        assert await storage.get_event_count(TOKEN) == 2

    async def test_every_event_of_a_block_is_stored(self, ingestor, connector, storage):
        connector.add_block(7, [transfer_log(7, 0), transfer_log(7, 1), transfer_log(7, 2)])

        assert await ingestor.process_block(7) == 3
        assert await storage.get_event_count(TOKEN) == 3
        assert ingestor.metrics.error_count == 0
        assert ingestor.last_block == 7

    async def test_undecodable_log_is_skipped(self, ingestor, connector, storage):
        broken = transfer_log(8, 0)
        broken["data"] = b"\x01"
        connector.add_block(8, [broken, transfer_log(8, 1)])

        assert await ingestor.process_block(8) == 1
        assert await storage.get_latest_block() == 8

    async def test_redelivered_event_is_not_republished(self, ingestor, connector, storage, broadcaster):
        token_sub = broadcaster.subscribe(contract_topic(TOKEN))
        connector.add_block(1, [transfer_log(1)])

        assert await ingestor.process_block(1) == 1
        assert await ingestor.process_block(1) == 0

        assert ingestor.metrics.total_events == await storage.get_event_count(TOKEN) == 1
        assert [m["type"] for m in drain(token_sub)] == [NEW_EVENT]

    async def test_publishes_block_and_event(self, ingestor, connector, broadcaster):
        global_sub = broadcaster.subscribe(GLOBAL_TOPIC)
        token_sub = broadcaster.subscribe(contract_topic(TOKEN))
        connector.add_block(9, [transfer_log(9)])

        await ingestor.process_block(9)

        (block_msg,) = drain(global_sub)
        assert block_msg["type"] == NEW_BLOCK
        assert block_msg["data"]["blockNumber"] == 9
        (event_msg,) = drain(token_sub)
        assert event_msg["type"] == NEW_EVENT
        assert event_msg["data"]["eventName"] == "Transfer"
        assert event_msg["data"]["id"] is not None

    async def test_unavailable_block_is_skipped(self, ingestor, connector, storage):
        connector.block_errors[3] = UpstreamUnavailable("timeout")

        assert await ingestor.process_block(3) == 0
        assert await ingestor.process_block(4) == 0  # never produced
        assert await storage.get_latest_block() is None

    async def test_persistence_error_is_counted_and_isolated(self, connector, tmp_path, broadcaster):
        storage = await FlakyStorage(str(tmp_path / "flaky.sqlite")).open()
        registry = ContractRegistry()
        registry.watch(TOKEN, ERC20_ABI)
        ingestor = EventIngestor(connector, registry, storage, broadcaster)
        connector.add_block(1, [transfer_log(1, 0), transfer_log(1, 1)])
        try:
            assert await ingestor.process_block(1) == 0
            assert ingestor.metrics.error_count == 2
            assert ingestor.metrics.total_events == 0
            # the block row itself still went in
            assert await storage.get_latest_block() == 1
        finally:
            await storage.close()


class TestRun:

    async def test_upstream_disconnect_is_fatal(self, ingestor, connector, storage):
        for n in (1, 2, 3):
            connector.add_block(n, [transfer_log(n)])
        connector.stream = [1, 2, 3]
        connector.fail_stream = True

        with pytest.raises(UpstreamConnectionError):
            await ingestor.run()

        assert await storage.get_latest_block() == 3
        assert ingestor.metrics.total_events == 3

    async def test_unexpected_block_error_does_not_stop_stream(self, ingestor, connector, storage):
        connector.add_block(1)
        connector.add_block(3)
        connector.block_errors[2] = RuntimeError("boom")
        connector.stream = [1, 2, 3]

        await ingestor.run()

        assert [b.block_number for b in await storage.get_blocks_by_range(0, 10)] == [1, 3]
        assert ingestor.metrics.error_count == 1

    async def test_backfill(self, ingestor, connector, storage):
        for n in range(10, 15):
            connector.add_block(n, [transfer_log(n)])

        assert await ingestor.backfill(10, 14) == 5
        assert await storage.get_latest_block() == 14


class TestMetrics:

    def test_tick_reports_delta(self):
        m = Metrics()
        for _ in range(3):
            m.record_event(GENESIS)
        assert m.tick() == 3
        assert m.tick() == 0
        m.record_event(GENESIS)
        assert m.tick() == 1
        assert m.snapshot()["totalEvents"] == 4
        assert m.snapshot()["lastEventTime"] == GENESIS.isoformat()

    async def test_metrics_loop_publishes(self, ingestor, broadcaster):
        sub = broadcaster.subscribe(GLOBAL_TOPIC)
        ingestor.metrics.record_event(GENESIS)
        task = asyncio.create_task(ingestor.metrics_loop(interval=0.01))
        try:
            msg = await asyncio.wait_for(sub.get(), timeout=2)
        finally:
            task.cancel()

        assert msg["type"] == METRICS_UPDATE
        assert msg["data"]["eventsPerSecond"] == 1
        assert msg["data"]["totalEvents"] == 1
        assert "timestamp" in msg["data"]


class TestContracts:

    async def test_added_contracts_reload_after_restart(self, ingestor, connector, storage, broadcaster):
        await ingestor.add_contract(TOKEN, ERC20_ABI, "Token")
        await ingestor.add_contract(OTHER, ERC20_ABI, "Other")

        fresh = EventIngestor(connector, ContractRegistry(), storage, broadcaster)
        loaded = await fresh.load_contracts([{"address": "0xnope", "abi": ERC20_ABI}])

        assert loaded == 2
        assert set(fresh.registry.addresses()) == {TOKEN, OTHER}
