"""
Chain connector: one upstream JSON-RPC connection (web3 AsyncWeb3).

- connect() fails fast when the endpoint is unreachable
- subscribe_new_blocks() is a lazy, infinite stream of block numbers
- get_block / get_transaction_receipt / get_logs / call_function fetch on demand

Reconnecting is the caller's business: a stream that raises is not restarted here.
"""

import asyncio
from typing import AsyncIterator, Iterable, Optional

import aiohttp
import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound as Web3BlockNotFound
from web3.exceptions import TransactionNotFound, Web3Exception

from devlab_indexer import config
from devlab_indexer.errors import (
    BlockNotFound, ReceiptNotFound, ReceiptUnavailable,
    UpstreamConnectionError, UpstreamUnavailable,
)
from devlab_indexer.helpers import hex_to_int, to_addr, to_hex, ts_to_datetime
from devlab_indexer.models import Block, Receipt

logger = structlog.get_logger()

# what a flaky node or network can throw at us
UPSTREAM_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


# ---------- light converters ----------
def block_from_rpc(b) -> Block:
    txs = {}
    for tx in b.get("transactions") or []:
        if isinstance(tx, (str, bytes)):
            # hashes only
            continue
        txs[to_hex(tx["hash"]).lower()] = dict(tx)
    return Block(
        block_number=hex_to_int(b["number"]),
        timestamp=ts_to_datetime(b["timestamp"]),
        transaction_count=len(b.get("transactions") or []),
        gas_used=hex_to_int(b.get("gasUsed")) or 0,
        gas_limit=hex_to_int(b.get("gasLimit")) or 0,
        transactions=txs,
    )

def receipt_from_rpc(r) -> Receipt:
    status = r.get("status")
    return Receipt(
        transaction_hash=to_hex(r["transactionHash"]).lower(),
        block_number=hex_to_int(r["blockNumber"]),
        from_address=to_addr(r.get("from")),
        to_address=to_addr(r.get("to")),
        gas_used=hex_to_int(r["gasUsed"]),
        effective_gas_price=hex_to_int(r.get("effectiveGasPrice", r.get("gasPrice"))) or 0,
        # pre-Byzantium receipts carry no status; assume success
        status=1 if status is None else hex_to_int(status),
        contract_address=to_addr(r.get("contractAddress")),
    )


class ChainConnector:

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        w3: Optional[AsyncWeb3] = None,
        poll_interval: float = config.POLL_INTERVAL,
        max_poll_failures: int = config.MAX_POLL_FAILURES,
    ):
        self.rpc_url = rpc_url or config.RPC_URL
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        self.poll_interval = poll_interval
        self.max_poll_failures = max_poll_failures
        self.head: Optional[int] = None

    async def connect(self) -> "ChainConnector":
        """Probe the endpoint once; unreachable means UpstreamConnectionError."""
        try:
            self.head = await self.w3.eth.block_number
        except UPSTREAM_ERRORS as e:
            raise UpstreamConnectionError(f"cannot reach {self.rpc_url}: {e}") from e
        logger.info("Connected to upstream", rpc_url=self.rpc_url, head=self.head)
        return self

    async def close(self) -> None:
        provider = getattr(self.w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def subscribe_new_blocks(self, start_block: Optional[int] = None) -> AsyncIterator[int]:
        """
        Yield every new block number in ascending order, filling any gap between
        two polls. Starts after the current head unless start_block is given.

        A failed poll is logged and retried. After max_poll_failures failures in a
        row the upstream is treated as gone and UpstreamConnectionError is raised.
        """
        last = None if start_block is None else start_block - 1
        failures = 0
        while True:
            try:
                head = await self.w3.eth.block_number
            except UPSTREAM_ERRORS as e:
                failures += 1
                logger.warning(
                    "Block poll failed",
                    attempt=failures,
                    max_failures=self.max_poll_failures,
                    error=str(e),
                )
                if failures >= self.max_poll_failures:
                    raise UpstreamConnectionError(
                        f"upstream unreachable after {failures} consecutive polls: {e}"
                    ) from e
                await asyncio.sleep(self.poll_interval)
                continue

            failures = 0
            self.head = head
            if last is None:
                last = head - 1
            for n in range(last + 1, head + 1):
                yield n
            last = max(last, head)
            await asyncio.sleep(self.poll_interval)

    async def get_block(self, block_number: int) -> Block:
        try:
            b = await self.w3.eth.get_block(block_number, full_transactions=True)
        except Web3BlockNotFound as e:
            raise BlockNotFound(f"block {block_number} not found") from e
        except UPSTREAM_ERRORS as e:
            raise UpstreamUnavailable(f"get_block({block_number}) failed: {e}") from e
        if b is None:
            raise BlockNotFound(f"block {block_number} not found")
        return block_from_rpc(b)

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt:
        try:
            r = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound as e:
            raise ReceiptNotFound(f"receipt {tx_hash} not found") from e
        except UPSTREAM_ERRORS as e:
            raise ReceiptUnavailable(f"get_transaction_receipt({tx_hash}) failed: {e}") from e
        if r is None:
            raise ReceiptNotFound(f"receipt {tx_hash} not found")
        return receipt_from_rpc(r)

    async def get_logs(self, block_number: int, addresses: Iterable[str]) -> list[dict]:
        addresses = list(addresses)
        if not addresses:
            return []
        try:
            logs = await self.w3.eth.get_logs({
                "fromBlock": block_number,
                "toBlock": block_number,
                "address": addresses,
            })
        except UPSTREAM_ERRORS as e:
            raise UpstreamUnavailable(f"get_logs({block_number}) failed: {e}") from e
        return [dict(lg) for lg in logs]

    async def call_function(self, address: str, abi: list, fn_name: str, block_number: int):
        """Read-only eth_call of a zero-argument function, pinned to block_number."""
        contract = self.w3.eth.contract(address=to_addr(address), abi=abi)
        try:
            return await contract.functions[fn_name]().call(block_identifier=block_number)
        except UPSTREAM_ERRORS as e:
            raise UpstreamUnavailable(f"{fn_name}() @ {block_number} failed: {e}") from e
