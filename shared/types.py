"""
Shared data types for the KWH event indexer.

Centralized dataclasses used across all modules.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from shared.constants import DEFAULT_FAILED_BATCH_RETRIES, NULL_LOG_INDEX, STATUS_CONFIRMED
from shared.serialization_utils import to_hex, to_int

if TYPE_CHECKING:
    from chain.contract_descriptor import ContractDescriptor

# ---------------------------------------------------------------------------
# Chain Data Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawLog:
    """A single EVM log entry, normalized from web3.py or websocket JSON."""

    address: str  # lowercased
    topics: tuple[str, ...]  # 0x-prefixed lowercase hex
    data: str
    block_number: int | None
    block_hash: str
    transaction_hash: str
    log_index: int | None
    transaction_index: int | None = None
    removed: bool = False

    @classmethod
    def from_rpc(cls, entry: Mapping[str, Any]) -> RawLog:
        """Build from an eth_getLogs / eth_subscription log object."""
        return cls(
            address=str(entry.get("address") or "").lower(),
            topics=tuple(to_hex(t) for t in (entry.get("topics") or [])),
            data=to_hex(entry.get("data")) or "0x",
            block_number=to_int(entry.get("blockNumber")),
            block_hash=to_hex(entry.get("blockHash")),
            transaction_hash=to_hex(entry.get("transactionHash")),
            log_index=to_int(entry.get("logIndex")),
            transaction_index=to_int(entry.get("transactionIndex")),
            removed=bool(entry.get("removed", False)),
        )

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class BlockInfo:
    number: int
    hash: str
    timestamp: int  # unix seconds


@dataclass(frozen=True)
class Receipt:
    transaction_hash: str
    block_number: int | None
    block_hash: str
    from_address: str  # lowercased
    to_address: str  # lowercased, "" for contract creation
    status: int | None

    @classmethod
    def from_rpc(cls, entry: Mapping[str, Any]) -> Receipt:
        return cls(
            transaction_hash=to_hex(entry.get("transactionHash")),
            block_number=to_int(entry.get("blockNumber")),
            block_hash=to_hex(entry.get("blockHash")),
            from_address=str(entry.get("from") or "").lower(),
            to_address=str(entry.get("to") or "").lower(),
            status=to_int(entry.get("status")),
        )


@dataclass(frozen=True)
class DecodedEvent:
    """Event name plus arguments keyed by declared parameter name (or argN)."""

    name: str
    args: dict[str, Any]
    log: RawLog


# ---------------------------------------------------------------------------
# Stored Record Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TxRecord:
    """Transaction-level record, unique on (tx_hash, log_index)."""

    chain_id: int
    block_number: int | None
    block_hash: str
    tx_hash: str
    log_index: int
    contract: str
    event: str
    args: dict[str, Any]
    from_address: str
    to_address: str
    block_time: datetime
    status: str = STATUS_CONFIRMED

    def as_row(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "contract": self.contract,
            "event": self.event,
            "args": self.args,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "status": self.status,
            "block_time": self.block_time,
        }


@dataclass(frozen=True)
class EventRecord:
    """Fine-grained event record with a UTC day key for daily aggregation."""

    chain_id: int
    block_number: int | None
    tx_hash: str
    log_index: int
    contract: str
    name: str
    args: dict[str, Any]
    ts: datetime
    day_key: str

    def as_row(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "contract": self.contract,
            "name": self.name,
            "args": self.args,
            "ts": self.ts,
            "day_key": self.day_key,
        }


@dataclass(frozen=True)
class RecordFilter:
    """Read-side filter for downstream analytics queries."""

    contract: str | None = None
    events: tuple[str, ...] = ()
    user: str | None = None  # matched against sender / recipient


# ---------------------------------------------------------------------------
# Contract / Settings Types
# ---------------------------------------------------------------------------

# Decode-and-persist closure: (raw log, receipt or None) -> inserted?
EventHandler = Callable[[RawLog, "Receipt | None"], Awaitable[bool]]


@dataclass(frozen=True)
class ContractSlot:
    """A configured contract position (primary token, billing, market)."""

    name: str
    address: str
    abi_name: str
    required: bool = False


@dataclass
class ContractBinding:
    """Runtime pairing of a descriptor with its address and event handlers."""

    name: str
    address: str  # checksum
    descriptor: ContractDescriptor
    handlers: dict[str, EventHandler] = field(default_factory=dict)

    @property
    def address_lower(self) -> str:
        return self.address.lower()


@dataclass(frozen=True)
class IndexerSettings:
    chain_id: int
    rpc_http_url: str
    rpc_ws_url: str
    poll_interval_seconds: float
    start_block: int | None
    confirmations: int
    batch_size: int
    fallback_window: int
    database_url: str
    contracts: tuple[ContractSlot, ...]
    strict_primary: bool = False
    failed_batch_retries: int = DEFAULT_FAILED_BATCH_RETRIES


@dataclass
class BackfillResult:
    """Outcome of a single backfill pass for one contract."""

    contract: str
    start_block: int
    safe_tip: int
    batches: int = 0
    logs_seen: int = 0
    inserted: int = 0
    failed_events: list[str] = field(default_factory=list)
    cursor: int | None = None

    @property
    def caught_up(self) -> bool:
        return self.cursor is not None and self.cursor > self.safe_tip

    @property
    def skipped(self) -> bool:
        return self.batches == 0 and not self.failed_events


def log_index_or_sentinel(value: int | None) -> int:
    return value if value is not None else NULL_LOG_INDEX
