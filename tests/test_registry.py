import json

import pytest
from hexbytes import HexBytes

from devlab_indexer.errors import InvalidInterface
from devlab_indexer.registry import ContractRegistry, parse_abi

from conftest import ALICE, BOB, ERC20_ABI, OTHER, TOKEN, transfer_log, tx_hash


@pytest.fixture
def registry():
    r = ContractRegistry()
    r.watch(TOKEN, ERC20_ABI, name="Token")
    return r


def test_decodes_transfer_in_abi_order(registry):
    decoded = registry.decode(transfer_log(100, log_index=3, value=42))

    assert decoded.event_name == "Transfer"
    assert decoded.contract_address == TOKEN
    assert decoded.block_number == 100
    assert decoded.log_index == 3
    assert decoded.transaction_hash == tx_hash(100 * 1000 + 3)
    assert decoded.arg_names == ["from", "to", "value"]
    sender, receiver, value = decoded.args
    assert sender.lower() == ALICE.lower()
    assert receiver.lower() == BOB.lower()
    assert value == 42


def test_hex_string_log_fields_are_accepted(registry):
    raw = transfer_log(7, value=5)
    raw["topics"] = ["0x" + bytes(t).hex() for t in raw["topics"]]
    raw["data"] = "0x" + bytes(raw["data"]).hex()
    raw["blockNumber"] = hex(7)
    raw["logIndex"] = "0x0"
    raw["address"] = TOKEN.lower()

    decoded = registry.decode(raw)
    assert decoded is not None
    assert decoded.block_number == 7
    assert decoded.args[2] == 5


def test_big_values_are_strings(registry):
    decoded = registry.decode(transfer_log(1, value=10**30))
    assert decoded.args[2] == str(10**30)


def test_unwatched_address_decodes_to_none(registry):
    assert registry.decode(transfer_log(1, address=OTHER)) is None


def test_unknown_topic_decodes_to_none(registry):
    raw = transfer_log(1)
    raw["topics"][0] = HexBytes(b"\x99" * 32)
    assert registry.decode(raw) is None


def test_no_topics_decodes_to_none(registry):
    raw = transfer_log(1)
    raw["topics"] = []
    assert registry.decode(raw) is None


def test_truncated_data_decodes_to_none(registry):
    raw = transfer_log(1)
    raw["data"] = HexBytes(b"\x01")
    assert registry.decode(raw) is None


def test_malformed_abi_keeps_prior_registration(registry):
    before = registry.abi_for(TOKEN)

    with pytest.raises(InvalidInterface):
        registry.watch(TOKEN, "{not json")
    with pytest.raises(InvalidInterface):
        registry.watch(TOKEN, [{"type": "event", "name": 7, "inputs": []}])
    with pytest.raises(InvalidInterface):
        registry.watch(TOKEN, {"no": "abi"})

    assert registry.abi_for(TOKEN) is before
    assert registry.decode(transfer_log(1)) is not None


def test_invalid_address_is_rejected(registry):
    with pytest.raises(InvalidInterface):
        registry.watch("0x1234", ERC20_ABI)
    assert len(registry) == 1


def test_invalid_interface_is_a_value_error():
    with pytest.raises(ValueError):
        ContractRegistry().watch(TOKEN, 42)


def test_rewatch_replaces_decoder(registry):
    only_approval = [e for e in ERC20_ABI if e.get("name") == "Approval"]
    registry.watch(TOKEN.lower(), only_approval)

    assert len(registry) == 1
    assert registry.decode(transfer_log(1)) is None


def test_unwatch(registry):
    assert registry.unwatch(TOKEN.lower()) is True
    assert registry.unwatch(TOKEN) is False
    assert not registry.is_watched(TOKEN)
    assert registry.addresses() == []


def test_parse_abi_accepts_text_and_artifacts():
    assert parse_abi(json.dumps(ERC20_ABI)) == ERC20_ABI
    assert parse_abi({"contractName": "Token", "abi": ERC20_ABI}) == ERC20_ABI


def test_abi_without_events_is_rejected():
    functions_only = [e for e in ERC20_ABI if e["type"] == "function"]
    with pytest.raises(InvalidInterface):
        ContractRegistry().watch(TOKEN, functions_only)
