"""
Unit tests for chain/contract_descriptor.py.

Tests cover artifact unwrapping, event name listing, topic computation,
named/positional argument decoding, tuple labelling and graceful skips.
"""

from __future__ import annotations

import pytest
from eth_abi import encode as abi_encode
from web3 import Web3

from chain.contract_descriptor import ContractDescriptor, is_valid_address
from conftest import (
    OTHER_ADDRESS,
    OVERLOADED_TOKEN_ABI,
    SHORT_TRANSFER_EVENT,
    TOKEN_ABI,
    TOKEN_ADDRESS,
    USER_ADDRESS,
    make_raw_log,
)
from shared.serialization_utils import to_hex
from shared.types import RawLog

# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_raw_abi_list(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        assert descriptor.event_names() == ["Transfer", "KWHConsumed", "TokensBurned"]

    def test_artifact_envelope(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", {"contractName": "KWHToken", "abi": TOKEN_ABI})
        assert "Transfer" in descriptor.event_names()

    def test_functions_and_anonymous_events_ignored(self):
        abi = TOKEN_ABI + [{"anonymous": True, "inputs": [], "name": "Ping", "type": "event"}]
        descriptor = ContractDescriptor.from_artifact("X", abi)
        assert "Ping" not in descriptor.event_names()
        assert "balanceOf" not in descriptor.event_names()

    def test_invalid_artifact_raises(self):
        with pytest.raises(ValueError, match="X"):
            ContractDescriptor.from_artifact("X", "not an abi")

    def test_topic_matches_keccak_signature(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        expected = to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))
        assert descriptor.topic_for("Transfer") == expected
        assert descriptor.topic_for("Missing") is None

    def test_overloaded_event_keeps_every_signature(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", OVERLOADED_TOKEN_ABI)
        short_topic = to_hex(Web3.keccak(text="Transfer(address,uint256)"))

        assert descriptor.event_names() == ["Transfer", "KWHConsumed", "TokensBurned"]
        assert len(descriptor.topics()) == 4
        assert [f.signature for f in descriptor.fragments() if f.name == "Transfer"] == [
            "Transfer(address,address,uint256)",
            "Transfer(address,uint256)",
        ]
        assert short_topic in descriptor.topics()

        raw = make_raw_log([SHORT_TRANSFER_EVENT], "Transfer", {"to": OTHER_ADDRESS, "value": 9})
        decoded = descriptor.decode(raw)
        assert decoded.name == "Transfer"
        assert list(decoded.args) == ["to", "value"]
        assert decoded.args["value"] == 9


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecode:
    def test_decode_named_args(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        raw = make_raw_log(TOKEN_ABI, "KWHConsumed", {"user": USER_ADDRESS, "kwh": 5})
        decoded = descriptor.decode(raw)
        assert decoded is not None
        assert decoded.name == "KWHConsumed"
        assert decoded.args["user"].lower() == USER_ADDRESS
        assert decoded.args["kwh"] == 5
        assert decoded.log is raw

    def test_decode_transfer_large_value(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        value = 10**24
        raw = make_raw_log(
            TOKEN_ABI, "Transfer", {"from": USER_ADDRESS, "to": OTHER_ADDRESS, "value": value}
        )
        decoded = descriptor.decode(raw)
        assert list(decoded.args) == ["from", "to", "value"]
        assert decoded.args["to"].lower() == OTHER_ADDRESS
        assert decoded.args["value"] == value

    def test_unnamed_params_get_positional_names(self):
        abi = [
            {
                "anonymous": False,
                "inputs": [
                    {"indexed": True, "name": "", "type": "address"},
                    {"indexed": False, "name": "", "type": "uint256"},
                ],
                "name": "Anon",
                "type": "event",
            }
        ]
        descriptor = ContractDescriptor.from_artifact("X", abi)
        topic0 = descriptor.topic_for("Anon")
        raw = RawLog(
            address=TOKEN_ADDRESS,
            topics=(topic0, to_hex(abi_encode(["address"], [USER_ADDRESS]))),
            data=to_hex(abi_encode(["uint256"], [42])),
            block_number=1,
            block_hash="0x" + "00" * 32,
            transaction_hash="0x" + "11" * 32,
            log_index=0,
        )
        decoded = descriptor.decode(raw)
        assert decoded.args["arg0"].lower() == USER_ADDRESS
        assert decoded.args["arg1"] == 42

    def test_tuple_components_are_named(self):
        abi = [
            {
                "anonymous": False,
                "inputs": [
                    {
                        "indexed": False,
                        "name": "order",
                        "type": "tuple",
                        "components": [
                            {"name": "id", "type": "uint256"},
                            {"name": "seller", "type": "address"},
                        ],
                    }
                ],
                "name": "OrderPlaced",
                "type": "event",
            }
        ]
        descriptor = ContractDescriptor.from_artifact("Market", abi)
        topic0 = to_hex(Web3.keccak(text="OrderPlaced((uint256,address))"))
        assert descriptor.topic_for("OrderPlaced") == topic0
        raw = RawLog(
            address=TOKEN_ADDRESS,
            topics=(topic0,),
            data=to_hex(abi_encode(["(uint256,address)"], [(7, USER_ADDRESS)])),
            block_number=1,
            block_hash="0x" + "00" * 32,
            transaction_hash="0x" + "22" * 32,
            log_index=3,
        )
        decoded = descriptor.decode(raw)
        assert decoded.args["order"]["id"] == 7
        assert decoded.args["order"]["seller"].lower() == USER_ADDRESS

    def test_indexed_string_keeps_topic_hash(self):
        abi = [
            {
                "anonymous": False,
                "inputs": [{"indexed": True, "name": "label", "type": "string"}],
                "name": "Labelled",
                "type": "event",
            }
        ]
        descriptor = ContractDescriptor.from_artifact("X", abi)
        hashed = to_hex(Web3.keccak(text="hello"))
        raw = RawLog(
            address=TOKEN_ADDRESS,
            topics=(descriptor.topic_for("Labelled"), hashed),
            data="0x",
            block_number=1,
            block_hash="",
            transaction_hash="0x" + "33" * 32,
            log_index=0,
        )
        assert descriptor.decode(raw).args["label"] == hashed

    def test_unknown_topic_returns_none(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        raw = RawLog(
            address=TOKEN_ADDRESS,
            topics=("0x" + "ab" * 32,),
            data="0x",
            block_number=1,
            block_hash="",
            transaction_hash="0x" + "44" * 32,
            log_index=0,
        )
        assert descriptor.decode(raw) is None

    def test_truncated_data_returns_none(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        good = make_raw_log(TOKEN_ABI, "KWHConsumed", {"user": USER_ADDRESS, "kwh": 5})
        bad = RawLog(
            address=good.address,
            topics=good.topics,
            data="0x01",
            block_number=good.block_number,
            block_hash=good.block_hash,
            transaction_hash=good.transaction_hash,
            log_index=good.log_index,
        )
        assert descriptor.decode(bad) is None

    def test_topic_count_mismatch_returns_none(self):
        descriptor = ContractDescriptor.from_artifact("KWHToken", TOKEN_ABI)
        good = make_raw_log(TOKEN_ABI, "KWHConsumed", {"user": USER_ADDRESS, "kwh": 5})
        bad = RawLog(
            address=good.address,
            topics=good.topics[:1],
            data=good.data,
            block_number=good.block_number,
            block_hash=good.block_hash,
            transaction_hash=good.transaction_hash,
            log_index=good.log_index,
        )
        assert descriptor.decode(bad) is None


class TestAddressValidation:
    def test_valid_addresses(self):
        assert is_valid_address(TOKEN_ADDRESS)
        assert is_valid_address(Web3.to_checksum_address(TOKEN_ADDRESS))

    def test_invalid_addresses(self):
        assert not is_valid_address("")
        assert not is_valid_address(None)
        assert not is_valid_address("0x1234")
        assert not is_valid_address("not-an-address")
