"""
Event recorder: decode-and-persist closures per contract event.

build_handlers() returns a name -> handler mapping built once per
contract descriptor. Each handler decodes a raw log, normalizes its
arguments, stamps the containing block's time (falling back to "now" when
the node cannot provide it) and writes both the transaction-level and the
fine-grained event record through the idempotent store.

Usage:
    from core.recorder import EventRecorder

    recorder = EventRecorder(gateway, event_store, chain_id=31337)
    handlers = recorder.build_handlers(descriptor, "0xAbc...")
    inserted = await handlers["Transfer"](raw_log, receipt)
"""

from __future__ import annotations

from datetime import datetime, timezone

from chain.contract_descriptor import ContractDescriptor
from chain.rpc_gateway import RpcGateway
from core.normalizer import normalize
from indexer_logging.logger_manager import setup_module_logger
from shared.types import (
    EventHandler,
    EventRecord,
    RawLog,
    Receipt,
    TxRecord,
    log_index_or_sentinel,
)
from storage.event_store import EventStore


def day_key(moment: datetime) -> str:
    """UTC calendar day, YYYY-MM-DD."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


class EventRecorder:
    def __init__(self, gateway: RpcGateway, event_store: EventStore, chain_id: int):
        self._gateway = gateway
        self._store = event_store
        self._chain_id = chain_id
        self._logger = setup_module_logger("event_recorder", "event_recorder.log", module_folder="Storage_Logs")

    def build_handlers(self, descriptor: ContractDescriptor, address: str) -> dict[str, EventHandler]:
        contract = address.lower()

        def make_handler(event_name: str) -> EventHandler:
            async def handle(raw_log: RawLog, receipt: Receipt | None) -> bool:
                return await self.record(descriptor, contract, event_name, raw_log, receipt)

            return handle

        return {name: make_handler(name) for name in descriptor.event_names()}

    async def _block_time(self, block_number: int | None) -> datetime:
        ts = await self._gateway.get_block_timestamp(block_number)
        if ts is None:
            return datetime.now(timezone.utc)
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    async def record(
        self,
        descriptor: ContractDescriptor,
        contract: str,
        event_name: str,
        raw_log: RawLog,
        receipt: Receipt | None,
    ) -> bool:
        """Persist one log. Returns True if either record was newly written."""
        decoded = descriptor.decode(raw_log)
        if decoded is None:
            return False
        if decoded.name != event_name:
            self._logger.debug(
                f"[RECORD] {contract}: {event_name} handler received {decoded.name}, recording as decoded"
            )

        args = normalize(decoded.args)
        block_time = await self._block_time(raw_log.block_number)
        log_index = log_index_or_sentinel(raw_log.log_index)

        tx_record = TxRecord(
            chain_id=self._chain_id,
            block_number=raw_log.block_number,
            block_hash=raw_log.block_hash,
            tx_hash=raw_log.transaction_hash,
            log_index=log_index,
            contract=contract,
            event=decoded.name,
            args=args,
            from_address=receipt.from_address if receipt else "",
            to_address=receipt.to_address if receipt else "",
            block_time=block_time,
        )
        event_record = EventRecord(
            chain_id=self._chain_id,
            block_number=raw_log.block_number,
            tx_hash=raw_log.transaction_hash,
            log_index=log_index,
            contract=contract,
            name=decoded.name,
            args=args,
            ts=block_time,
            day_key=day_key(block_time),
        )

        tx_inserted = await self._store.upsert_if_absent(tx_record)
        event_inserted = await self._store.upsert_if_absent(event_record)
        if tx_inserted or event_inserted:
            self._logger.info(
                f"[RECORD] {decoded.name} block={raw_log.block_number} "
                f"tx={raw_log.transaction_hash} logIndex={log_index}",
                extra={
                    "contract": contract,
                    "event_name": decoded.name,
                    "block_number": raw_log.block_number,
                    "tx_hash": raw_log.transaction_hash,
                },
            )
        return tx_inserted or event_inserted
