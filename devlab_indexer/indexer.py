"""
Event ingestion pipeline.

For every block number coming out of the connector:
1. fetch the block and the logs of every watched contract
2. decode the logs with the registry
3. best-effort receipt fetch to fill gas_used (and the transactions table)
4. upsert the block, insert the events
5. publish new-block (global) and new-event (per contract)
6. bump the metrics

Every failure inside one block is caught and classified here; only a lost
upstream (UpstreamConnectionError) ends run().
"""

import asyncio
import time
from typing import Dict, Iterable, Optional

import structlog

from devlab_indexer import config
from devlab_indexer.broadcast import (
    GLOBAL_TOPIC, METRICS_UPDATE, NEW_BLOCK, NEW_EVENT,
    Broadcaster, contract_topic,
)
from devlab_indexer.db import Storage
from devlab_indexer.errors import (
    InvalidInterface, PersistenceError, ReceiptUnavailable, UpstreamUnavailable,
)
from devlab_indexer.helpers import to_addr, utcnow
from devlab_indexer.models import Block, DecodedEvent, Event, Metrics, Receipt, Transaction
from devlab_indexer.registry import ContractDecoder, ContractRegistry

logger = structlog.get_logger()


class EventIngestor:

    def __init__(
        self,
        connector,
        registry: ContractRegistry,
        storage: Storage,
        broadcaster: Broadcaster,
        metrics: Optional[Metrics] = None,
        receipt_concurrency: int = config.RECEIPT_CONC,
        store_transactions: bool = config.STORE_TRANSACTIONS,
    ):
        self.connector = connector
        self.registry = registry
        self.storage = storage
        self.broadcaster = broadcaster
        self.metrics = metrics or Metrics()
        self.receipt_concurrency = receipt_concurrency
        self.store_transactions = store_transactions
        self.started_at = time.monotonic()
        self.last_block: Optional[int] = None

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    # ---------- contracts ----------
    async def add_contract(self, contract_address: str, abi, name: Optional[str] = None) -> ContractDecoder:
        """Validate + register a watch, then persist it so it survives restarts."""
        decoder = self.registry.watch(contract_address, abi, name=name)
        try:
            await self.storage.store_contract(decoder.address, decoder.abi, name)
        except PersistenceError as e:
            # the live registration stands; it just won't be reloaded on restart
            self.metrics.record_error()
            logger.error("Failed to persist contract", contract=decoder.address, error=str(e))
        return decoder

    async def load_contracts(self, watchlist: Iterable[dict] = ()) -> int:
        """Reload persisted registrations, then apply the startup watchlist on top."""
        loaded = 0
        entries = list(await self.storage.get_contracts()) + list(watchlist)
        for c in entries:
            try:
                await self.add_contract(c["address"], c["abi"], c.get("name"))
                loaded += 1
            except InvalidInterface as e:
                logger.warning("Skipping contract with invalid interface", contract=c.get("address"), error=str(e))
        return loaded

    # ---------- per block ----------
    async def _fetch_receipts(self, tx_hashes: Iterable[str]) -> Dict[str, Receipt]:
        sem = asyncio.Semaphore(self.receipt_concurrency)

        async def rec_task(tx_hash):
            async with sem:
                try:
                    return tx_hash, await self.connector.get_transaction_receipt(tx_hash)
                except ReceiptUnavailable as e:
                    logger.warning("Receipt unavailable, gas left unknown", tx_hash=tx_hash, error=str(e))
                    return tx_hash, None

        pairs = await asyncio.gather(*[rec_task(h) for h in tx_hashes])
        return {h: r for h, r in pairs if r is not None}

    def _build_event(self, decoded: DecodedEvent, block: Block, receipt: Optional[Receipt]) -> Event:
        return Event(
            contract_address=decoded.contract_address,
            event_name=decoded.event_name,
            block_number=decoded.block_number,
            transaction_hash=decoded.transaction_hash,
            log_index=decoded.log_index,
            args=decoded.args,
            gas_used=receipt.gas_used if receipt else None,
            timestamp=block.timestamp,
            created_at=utcnow(),
        )

    def _build_transaction(self, receipt: Receipt, block: Block) -> Optional[Transaction]:
        tx = block.transactions.get(receipt.transaction_hash, {})
        from_address = receipt.from_address or tx.get("from")
        if not from_address:
            return None
        gas_price = receipt.effective_gas_price or int(tx.get("gasPrice") or 0)
        return Transaction(
            hash=receipt.transaction_hash,
            block_number=receipt.block_number,
            from_address=to_addr(from_address),
            to_address=receipt.to_address or (to_addr(tx["to"]) if tx.get("to") else None),
            value=int(tx.get("value") or 0),
            gas_used=receipt.gas_used,
            gas_price=gas_price,
            status=receipt.status,
            timestamp=block.timestamp,
        )

    async def process_block(self, block_number: int) -> int:
        """Ingest one block. Never raises; returns the number of events persisted."""
        try:
            block = await self.connector.get_block(block_number)
            logs = await self.connector.get_logs(block_number, self.registry.addresses())
        except UpstreamUnavailable as e:
            logger.warning("Skipping block, upstream unavailable", block_number=block_number, error=str(e))
            return 0

        decoded = [d for d in (self.registry.decode(lg) for lg in logs) if d is not None]
        tx_hashes = {d.transaction_hash for d in decoded if d.transaction_hash}
        receipts = await self._fetch_receipts(tx_hashes) if tx_hashes else {}

        try:
            await self.storage.store_block(block)
        except PersistenceError as e:
            self.metrics.record_error()
            logger.error("Failed to store block", block_number=block_number, error=str(e))
        else:
            self.broadcaster.publish(GLOBAL_TOPIC, NEW_BLOCK, block.to_wire())

        stored = 0
        for d in decoded:
            event = self._build_event(d, block, receipts.get(d.transaction_hash))
            try:
                event.id, inserted = await self.storage.store_event(event)
            except PersistenceError as e:
                self.metrics.record_error()
                logger.error(
                    "Failed to store event",
                    block_number=block_number,
                    contract=event.contract_address,
                    event_name=event.event_name,
                    error=str(e),
                )
                continue
            if not inserted:
                logger.debug("Event already stored", tx_hash=event.transaction_hash, log_index=event.log_index)
                continue
            self.broadcaster.publish(contract_topic(event.contract_address), NEW_EVENT, event.to_wire())
            self.metrics.record_event(utcnow())
            stored += 1
            logger.debug("Event processed", contract=event.contract_address, event_name=event.event_name)

        if self.store_transactions:
            for receipt in receipts.values():
                tx = self._build_transaction(receipt, block)
                if tx is None:
                    continue
                try:
                    await self.storage.store_transaction(tx)
                except PersistenceError as e:
                    self.metrics.record_error()
                    logger.error("Failed to store transaction", tx_hash=tx.hash, error=str(e))

        self.last_block = block_number
        logger.debug("Block processed", block_number=block_number, txs=block.transaction_count, events=stored)
        return stored

    async def _process_isolated(self, block_number: int) -> None:
        try:
            await self.process_block(block_number)
        except Exception as e:
            # a bug in one block must not stop the stream
            self.metrics.record_error()
            logger.exception("Unexpected error processing block", block_number=block_number, error=str(e))

    # ---------- loops ----------
    async def metrics_loop(self, interval: float = config.METRICS_INTERVAL) -> None:
        """Fixed-rate metrics push, independent of how fast blocks arrive."""
        while True:
            await asyncio.sleep(interval)
            self.metrics.tick()
            self.broadcaster.publish(
                GLOBAL_TOPIC,
                METRICS_UPDATE,
                {**self.metrics.snapshot(), "timestamp": utcnow().isoformat()},
            )

    async def backfill(self, start: int, end: int) -> int:
        """Run [start, end] through the live per-block path; returns events stored."""
        total = 0
        for n in range(start, end + 1):
            before = self.metrics.total_events
            await self._process_isolated(n)
            total += self.metrics.total_events - before
        logger.info("Backfill done", start=start, end=end, events=total)
        return total

    async def run(self, start_block: Optional[int] = None) -> None:
        """
        Consume block notifications until the connector gives up. The
        UpstreamConnectionError it raises is left to the caller.
        """
        metrics_task = asyncio.create_task(self.metrics_loop())
        logger.info("Ingestion started", contracts=len(self.registry), start_block=start_block)
        try:
            async for block_number in self.connector.subscribe_new_blocks(start_block):
                await self._process_isolated(block_number)
        finally:
            metrics_task.cancel()
            try:
                await metrics_task
            except asyncio.CancelledError:
                pass
            logger.info("Ingestion stopped", last_block=self.last_block)
