"""
Contract state capture: evaluates every zero-argument view/pure function of a
watched contract at a given block and stores the result as a snapshot.
"""

from typing import Any, Dict, List, Optional

import structlog

from devlab_indexer.db import Storage
from devlab_indexer.errors import NotFound, UpstreamUnavailable
from devlab_indexer.helpers import to_addr, to_json_value, utcnow
from devlab_indexer.models import ContractStateSnapshot
from devlab_indexer.registry import ContractRegistry

logger = structlog.get_logger()


def state_getters(abi: List[Dict[str, Any]]) -> List[str]:
    """Names of the functions that can be read without arguments."""
    names = []
    for entry in abi:
        if entry.get("type", "function") != "function":
            continue
        mutability = entry.get("stateMutability")
        is_view = mutability in ("view", "pure") or entry.get("constant") is True
        if is_view and not entry.get("inputs") and entry.get("name"):
            names.append(entry["name"])
    return names


class StateCapturer:

    def __init__(self, connector, registry: ContractRegistry, storage: Storage):
        self.connector = connector
        self.registry = registry
        self.storage = storage

    async def capture(self, contract_address: str, block_number: int) -> ContractStateSnapshot:
        """
        Read every getter at block_number and persist the snapshot. Getters that
        fail are left out of the snapshot; the capture itself still succeeds.
        """
        address = to_addr(contract_address)
        abi = self.registry.abi_for(address)
        if abi is None:
            raise NotFound(f"contract {address} is not watched")

        block = await self.storage.get_block(block_number)
        state: Dict[str, Any] = {}
        for fn_name in state_getters(abi):
            try:
                value = await self.connector.call_function(address, abi, fn_name, block_number)
            except UpstreamUnavailable as e:
                logger.warning("State getter failed", contract=address, fn=fn_name, block_number=block_number, error=str(e))
                continue
            state[fn_name] = to_json_value(value)

        snapshot = ContractStateSnapshot(
            contract_address=address,
            block_number=block_number,
            state_data=state,
            timestamp=block.timestamp if block else utcnow(),
        )
        await self.storage.store_contract_state(snapshot)
        logger.info("State captured", contract=address, block_number=block_number, keys=len(state))
        return snapshot

    async def get_or_capture(self, contract_address: str, block_number: int) -> Optional[ContractStateSnapshot]:
        snapshot = await self.storage.get_contract_state(contract_address, block_number)
        if snapshot is not None:
            return snapshot
        if self.connector is None or not self.registry.is_watched(contract_address):
            return None
        return await self.capture(contract_address, block_number)
