from datetime import datetime, timedelta, timezone

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from devlab_indexer.broadcast import Broadcaster
from devlab_indexer.db import Storage
from devlab_indexer.errors import BlockNotFound, ReceiptNotFound, UpstreamConnectionError
from devlab_indexer.indexer import EventIngestor
from devlab_indexer.logging_setup import configure_logging
from devlab_indexer.models import Block, Event, Receipt
from devlab_indexer.registry import ContractRegistry

TOKEN = Web3.to_checksum_address("0x" + "ab" * 20)
OTHER = Web3.to_checksum_address("0x" + "cd" * 20)
ALICE = Web3.to_checksum_address("0x" + "a1" * 20)
BOB = Web3.to_checksum_address("0x" + "b2" * 20)

GENESIS = datetime(2024, 1, 1, tzinfo=timezone.utc)

ERC20_ABI = [
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Approval",
        "anonymous": False,
        "inputs": [
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "spender", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {"type": "function", "name": "totalSupply", "inputs": [], "outputs": [{"type": "uint256"}], "stateMutability": "view"},
    {"type": "function", "name": "symbol", "inputs": [], "outputs": [{"type": "string"}], "stateMutability": "view"},
    {"type": "function", "name": "balanceOf", "inputs": [{"name": "who", "type": "address"}],
     "outputs": [{"type": "uint256"}], "stateMutability": "view"},
    {"type": "function", "name": "transfer", "inputs": [{"name": "to", "type": "address"}, {"name": "v", "type": "uint256"}],
     "outputs": [{"type": "bool"}], "stateMutability": "nonpayable"},
]

TRANSFER_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)")


def tx_hash(n: int) -> str:
    return "0x" + n.to_bytes(32, "big").hex()


def make_block(n: int, txs: int = 1) -> Block:
    return Block(
        block_number=n,
        timestamp=GENESIS + timedelta(seconds=n),
        transaction_count=txs,
        gas_used=21_000 * txs,
        gas_limit=30_000_000,
    )


def make_event(n: int, log_index: int = 0, name: str = "Transfer", address: str = TOKEN,
               gas_used=21_000, ts: datetime = None) -> Event:
    return Event(
        contract_address=address,
        event_name=name,
        block_number=n,
        transaction_hash=tx_hash(n * 1000 + log_index),
        log_index=log_index,
        args=[ALICE, BOB, n],
        gas_used=gas_used,
        timestamp=ts or GENESIS + timedelta(seconds=n),
        created_at=GENESIS + timedelta(seconds=n + 1),
    )


def transfer_log(block_number: int, log_index: int = 0, value: int = 1000,
                 address: str = TOKEN, sender: str = ALICE, receiver: str = BOB) -> dict:
    """A raw eth_getLogs entry for Transfer(sender, receiver, value)."""
    return {
        "address": address,
        "topics": [
            TRANSFER_TOPIC,
            HexBytes(encode(["address"], [sender])),
            HexBytes(encode(["address"], [receiver])),
        ],
        "data": HexBytes(encode(["uint256"], [value])),
        "blockNumber": block_number,
        "blockHash": HexBytes(b"\x01" * 32),
        "transactionHash": HexBytes(tx_hash(block_number * 1000 + log_index)),
        "transactionIndex": 0,
        "logIndex": log_index,
    }


class FakeConnector:
    """In-memory stand-in for ChainConnector."""

    def __init__(self):
        self.blocks = {}
        self.logs = {}
        self.receipts = {}
        self.state = {}
        self.stream = []
        self.fail_stream = False
        self.block_errors = {}
        self.head = None

    def add_block(self, n: int, logs=()):
        self.blocks[n] = make_block(n, txs=max(1, len(logs)))
        self.logs[n] = list(logs)
        self.head = max(self.head or 0, n)

    def add_receipt(self, block_number: int, log_index: int = 0, gas_used: int = 50_000):
        h = tx_hash(block_number * 1000 + log_index)
        self.receipts[h] = Receipt(
            transaction_hash=h,
            block_number=block_number,
            from_address=ALICE,
            to_address=TOKEN,
            gas_used=gas_used,
            effective_gas_price=1_000_000_000,
            status=1,
        )

    async def subscribe_new_blocks(self, start_block=None):
        for n in self.stream:
            yield n
        if self.fail_stream:
            raise UpstreamConnectionError("upstream went away")

    async def get_block(self, block_number):
        if block_number in self.block_errors:
            raise self.block_errors[block_number]
        try:
            return self.blocks[block_number]
        except KeyError:
            raise BlockNotFound(f"block {block_number} not found") from None

    async def get_logs(self, block_number, addresses):
        wanted = set(addresses)
        return [lg for lg in self.logs.get(block_number, []) if lg["address"] in wanted]

    async def get_transaction_receipt(self, h):
        try:
            return self.receipts[h]
        except KeyError:
            raise ReceiptNotFound(f"receipt {h} not found") from None

    async def call_function(self, address, abi, fn_name, block_number):
        value = self.state.get((block_number, fn_name))
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture(autouse=True, scope="session")
def _logging():
    configure_logging("warning")


@pytest.fixture
async def storage(tmp_path):
    s = await Storage(str(tmp_path / "index.sqlite")).open()
    yield s
    await s.close()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def broadcaster():
    return Broadcaster(queue_size=100)


@pytest.fixture
def ingestor(connector, storage, broadcaster):
    registry = ContractRegistry()
    registry.watch(TOKEN, ERC20_ABI, name="Token")
    return EventIngestor(connector, registry, storage, broadcaster, receipt_concurrency=4)
