"""
Contract watch registry: address -> ContractDecoder built from the contract's ABI.

Decoding picks the decoder by the log's emitter address, then the event ABI by
topic0. Logs that match nothing decode to None; that is the common case on a
busy chain, not an error.
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from eth_abi.abi import default_codec
from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic
from web3 import AsyncWeb3
from web3._utils.events import get_event_data
from web3.exceptions import Web3Exception

from devlab_indexer.errors import InvalidInterface
from devlab_indexer.helpers import hex_to_int, to_addr, to_bytes, to_hex, to_json_value
from devlab_indexer.models import DecodedEvent

logger = structlog.get_logger()

DECODE_ERRORS = (Web3Exception, DecodingError, ValueError, KeyError, TypeError, IndexError)


def parse_abi(abi) -> List[Dict[str, Any]]:
    """Accept an ABI list, its JSON text, or a Hardhat artifact ({"abi": [...]})."""
    if isinstance(abi, (str, bytes)):
        try:
            abi = json.loads(abi)
        except ValueError as e:
            raise InvalidInterface(f"ABI is not valid JSON: {e}") from e
    if isinstance(abi, dict) and "abi" in abi:
        abi = abi["abi"]
    if not isinstance(abi, list):
        raise InvalidInterface("ABI must be a list of entries")
    for entry in abi:
        if not isinstance(entry, dict):
            raise InvalidInterface(f"ABI entry is not an object: {entry!r}")
    return abi


def normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log)
    out["topics"] = [to_bytes(t) for t in out.get("topics") or []]
    out["data"] = to_bytes(out.get("data") or b"")
    if out.get("transactionHash") is not None:
        out["transactionHash"] = to_bytes(out["transactionHash"])
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        out[key] = hex_to_int(out.get(key))
    out.setdefault("blockHash", None)
    if isinstance(out.get("address"), str):
        out["address"] = to_addr(out["address"])
    return out


class ContractDecoder:
    """Typed decoder for one contract: topic0 -> event ABI."""

    def __init__(self, address: str, abi: List[Dict[str, Any]], name: Optional[str] = None):
        self.address = address
        self.abi = abi
        self.name = name
        self.events_by_topic: Dict[bytes, Dict[str, Any]] = {}
        for entry in abi:
            if entry.get("type") != "event" or entry.get("anonymous"):
                continue
            if not isinstance(entry.get("name"), str) or not isinstance(entry.get("inputs", []), list):
                raise InvalidInterface(f"malformed event entry: {entry!r}")
            try:
                topic = bytes(event_abi_to_log_topic(entry))
            except (ValueError, KeyError, TypeError) as e:
                raise InvalidInterface(f"cannot compute signature of event {entry.get('name')}: {e}") from e
            # the decoder indexes "anonymous" and "indexed" directly
            self.events_by_topic[topic] = {
                **entry,
                "anonymous": False,
                "inputs": [{"indexed": False, **i} for i in entry.get("inputs", [])],
            }
        if not self.events_by_topic:
            raise InvalidInterface("ABI declares no events")

    @property
    def event_names(self) -> List[str]:
        return [e["name"] for e in self.events_by_topic.values()]

    def decode(self, log: Dict[str, Any]) -> Optional[DecodedEvent]:
        if not log["topics"]:
            return None
        event_abi = self.events_by_topic.get(bytes(log["topics"][0]))
        if event_abi is None:
            return None
        try:
            data = get_event_data(default_codec, event_abi, log)
        except DECODE_ERRORS as e:
            logger.debug("Log did not decode", contract=self.address, event_name=event_abi["name"], error=str(e))
            return None

        names = [i.get("name", "") for i in event_abi.get("inputs", [])]
        args = [to_json_value(data["args"][n]) for n in names]
        tx_hash = log.get("transactionHash")
        return DecodedEvent(
            contract_address=self.address,
            event_name=data["event"],
            block_number=log["blockNumber"],
            transaction_hash=to_hex(tx_hash).lower() if tx_hash is not None else None,
            log_index=log.get("logIndex"),
            args=args,
            arg_names=names,
        )


class ContractRegistry:

    def __init__(self):
        self._decoders: Dict[str, ContractDecoder] = {}

    def watch(self, contract_address: str, abi, name: Optional[str] = None) -> ContractDecoder:
        """
        Register (or replace) the decoder for an address. Any validation failure
        raises InvalidInterface and leaves the existing registration as it was.
        """
        if not isinstance(contract_address, str) or not AsyncWeb3.is_address(contract_address):
            raise InvalidInterface(f"invalid contract address: {contract_address!r}")
        address = to_addr(contract_address)
        decoder = ContractDecoder(address, parse_abi(abi), name=name)
        replaced = address in self._decoders
        self._decoders[address] = decoder
        logger.info(
            "Contract watched",
            contract=address,
            events=decoder.event_names,
            replaced=replaced,
        )
        return decoder

    def unwatch(self, contract_address: str) -> bool:
        try:
            address = to_addr(contract_address)
        except (ValueError, TypeError):
            return False
        return self._decoders.pop(address, None) is not None

    def is_watched(self, contract_address: str) -> bool:
        try:
            return to_addr(contract_address) in self._decoders
        except (ValueError, TypeError):
            return False

    def addresses(self) -> List[str]:
        return list(self._decoders.keys())

    def abi_for(self, contract_address: str) -> Optional[List[Dict[str, Any]]]:
        decoder = self._decoders.get(to_addr(contract_address))
        return decoder.abi if decoder else None

    def decode(self, raw_log: Dict[str, Any]) -> Optional[DecodedEvent]:
        address = raw_log.get("address")
        if not address:
            return None
        try:
            decoder = self._decoders.get(to_addr(address))
        except (ValueError, TypeError):
            return None
        if decoder is None:
            return None
        try:
            log = normalize_log(raw_log)
        except (ValueError, TypeError) as e:
            logger.debug("Malformed raw log", contract=decoder.address, error=str(e))
            return None
        return decoder.decode(log)

    def __len__(self):
        return len(self._decoders)
