"""
Shared pytest configuration and fixtures for KWH event indexer tests.

Provides sample ABIs, raw-log builders, an in-memory fake gateway and
temporary SQLite storage used across the unit test suite.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any
from unittest.mock import MagicMock

import pytest
from eth_abi import encode as abi_encode
from web3 import Web3

from shared.serialization_utils import to_hex
from shared.types import ContractSlot, IndexerSettings, RawLog, Receipt

# ---------------------------------------------------------------------------
# Sample addresses / ABI
# ---------------------------------------------------------------------------

TOKEN_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
BILLING_ADDRESS = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
USER_ADDRESS = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
OTHER_ADDRESS = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"

TOKEN_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "kwh", "type": "uint256"},
        ],
        "name": "KWHConsumed",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "TokensBurned",
        "type": "event",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Second Transfer signature, as on contracts that overload the event name
SHORT_TRANSFER_EVENT: dict[str, Any] = {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "name": "to", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
    ],
    "name": "Transfer",
    "type": "event",
}

OVERLOADED_TOKEN_ABI: list[dict[str, Any]] = TOKEN_ABI + [SHORT_TRANSFER_EVENT]


def tx_hash_for(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_raw_log(
    abi: list[dict[str, Any]],
    event_name: str,
    values: dict[str, Any],
    *,
    address: str = TOKEN_ADDRESS,
    block_number: int = 100,
    tx_hash: str | None = None,
    log_index: int = 0,
) -> RawLog:
    """ABI-encode an event into the RawLog a node would return."""
    entry = next(e for e in abi if e.get("type") == "event" and e["name"] == event_name)
    inputs = entry["inputs"]
    signature = f"{event_name}({','.join(i['type'] for i in inputs)})"
    topics = [to_hex(Web3.keccak(text=signature))]
    for i in inputs:
        if i.get("indexed"):
            topics.append(to_hex(abi_encode([i["type"]], [values[i["name"]]])))
    data_inputs = [i for i in inputs if not i.get("indexed")]
    data = abi_encode([i["type"] for i in data_inputs], [values[i["name"]] for i in data_inputs])
    return RawLog(
        address=address.lower(),
        topics=tuple(topics),
        data=to_hex(data),
        block_number=block_number,
        block_hash="0x" + f"{block_number:064x}",
        transaction_hash=tx_hash or tx_hash_for(block_number * 1000 + log_index),
        log_index=log_index,
    )


def make_settings(**overrides: Any) -> IndexerSettings:
    settings = IndexerSettings(
        chain_id=31337,
        rpc_http_url="http://127.0.0.1:8545",
        rpc_ws_url="",
        poll_interval_seconds=5.0,
        start_block=None,
        confirmations=0,
        batch_size=2000,
        fallback_window=2000,
        database_url="sqlite://",
        contracts=(ContractSlot("KWHToken", TOKEN_ADDRESS, "KWHToken", required=True),),
        strict_primary=False,
    )
    return replace(settings, **overrides)


# ---------------------------------------------------------------------------
# Fake gateway (in-memory chain)
# ---------------------------------------------------------------------------


class FakeGateway:
    """
    In-memory stand-in for RpcGateway.

    `logs` holds every RawLog on the chain; `failing_topics` makes get_logs
    raise for those topic0 values; `get_logs_calls` records each query range.
    """

    transport_name = "fake"

    def __init__(self, tip: int = 0):
        self.tip = tip
        self.logs: list[RawLog] = []
        self.failing_topics: set[str] = set()
        self.get_logs_calls: list[tuple[int, int, str]] = []
        self.receipt_calls = 0
        self.block_subscribers: list[Any] = []
        self.event_subscriptions: list[tuple[str, str, Any]] = []
        self.started = False

    async def latest_block_number(self) -> int:
        return self.tip

    async def get_block_timestamp(self, block_number: int | None) -> int | None:
        return None if block_number is None else 1_700_000_000 + block_number * 12

    async def get_logs(self, addresses, from_block, to_block, topics=None):
        topic0 = topics[0] if topics else None
        self.get_logs_calls.append((from_block, to_block, topic0))
        if topic0 in self.failing_topics:
            raise RuntimeError(f"filter rejected for {topic0}")
        wanted = {a.lower() for a in addresses}
        return [
            entry
            for entry in self.logs
            if entry.address in wanted
            and from_block <= entry.block_number <= to_block
            and (topic0 is None or entry.topic0 == topic0)
        ]

    async def get_transaction_receipt(self, log_or_hash):
        self.receipt_calls += 1
        tx_hash = log_or_hash if isinstance(log_or_hash, str) else log_or_hash.transaction_hash
        return Receipt(
            transaction_hash=tx_hash,
            block_number=None,
            block_hash="",
            from_address=USER_ADDRESS,
            to_address=TOKEN_ADDRESS,
            status=1,
        )

    def subscribe_new_blocks(self, callback) -> None:
        self.block_subscribers.append(callback)

    def subscribe_event(self, address, topic, callback) -> None:
        self.event_subscriptions.append((address, topic, callback))

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False


@pytest.fixture
def fake_gateway():
    return FakeGateway()


# ---------------------------------------------------------------------------
# Storage fixtures (temporary SQLite file per test)
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    from storage.database import connect_storage

    eng = connect_storage(f"sqlite:///{tmp_path / 'indexer.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def cursor_store(engine):
    from storage.cursor_store import CursorStore

    return CursorStore(engine)


@pytest.fixture
def event_store(engine):
    from storage.event_store import EventStore

    return EventStore(engine)


# ---------------------------------------------------------------------------
# Config loader fixture (patched singleton)
# ---------------------------------------------------------------------------

STANDARD_TIMING_CONFIG = {
    "rpc_retry_attempts": 3,
    "rpc_retry_backoff_seconds": 0.2,
    "block_cache_size": 5000,
    "poll_interval_seconds": 5.0,
    "websocket": {
        "ping_interval_seconds": 20,
        "ping_timeout_seconds": 20,
        "close_timeout_seconds": 10,
        "reconnect_base_delay_seconds": 1.0,
        "reconnect_max_delay_seconds": 60.0,
        "reconnect_jitter_seconds": 1.0,
    },
}


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_timing_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_timing_config.return_value = dict(STANDARD_TIMING_CONFIG)
    loader.get_app_config.return_value = {"logging": {"log_dir": "logs", "module_folders": {}}}
    loader.get_indexer_config.return_value = {
        "chain_id": 31337,
        "start_block": 0,
        "confirmations": 0,
        "batch_size": 2000,
        "fallback_window": 2000,
        "storage": {"url": "sqlite://"},
    }
    loader.get_abi.return_value = TOKEN_ABI
    return loader
