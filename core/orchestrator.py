"""
Indexer orchestrator: composes gateway, descriptors, stores and engines.

start():
    1. validate each configured contract slot and build bindings
    2. run the initial backfill for all bindings concurrently, wait for all
    3. attach live listeners and the new-block catch-up trigger
    4. start the gateway transport

A missing or malformed optional address excludes that contract with a
warning. A missing primary contract is a warning too unless strict_primary
is set, in which case IndexerConfigError is raised.
"""

from __future__ import annotations

import asyncio

from web3 import Web3

from chain.contract_descriptor import ContractDescriptor, is_valid_address
from chain.rpc_gateway import RpcGateway
from config.loader import get_config
from core.backfill import BackfillEngine
from core.live_tail import LiveTailEngine
from core.recorder import EventRecorder
from indexer_logging.logger_manager import setup_module_logger
from shared.types import BackfillResult, ContractBinding, IndexerSettings
from storage.cursor_store import CursorStore
from storage.event_store import EventStore


class IndexerConfigError(Exception):
    """The primary contract is unusable and strict_primary is enabled."""

    pass


class IndexerOrchestrator:
    def __init__(
        self,
        settings: IndexerSettings,
        gateway: RpcGateway,
        cursor_store: CursorStore,
        event_store: EventStore,
    ):
        self._settings = settings
        self._gateway = gateway
        self._recorder = EventRecorder(gateway, event_store, settings.chain_id)
        self._backfill = BackfillEngine(gateway, cursor_store, settings)
        self._live_tail = LiveTailEngine(gateway, self._backfill)
        self.bindings: list[ContractBinding] = []

        self._logger = setup_module_logger(
            "orchestrator", "orchestrator.log", module_folder="Orchestrator_Logs"
        )

    @property
    def live_tail(self) -> LiveTailEngine:
        return self._live_tail

    def build_bindings(self) -> list[ContractBinding]:
        """One binding per configured slot with a valid, unique address."""
        config = get_config()
        bindings: list[ContractBinding] = []
        seen: set[str] = set()

        for slot in self._settings.contracts:
            if not is_valid_address(slot.address):
                if slot.required:
                    message = f"Primary contract {slot.name} has no valid address ({slot.address!r})"
                    if self._settings.strict_primary:
                        self._logger.critical(f"[ORCH] {message}")
                        raise IndexerConfigError(message)
                    self._logger.warning(f"[ORCH] {message}; it will not be indexed")
                else:
                    self._logger.warning(f"[ORCH] {slot.name} address missing/invalid; skipped")
                continue

            address = Web3.to_checksum_address(slot.address)
            if address.lower() in seen:
                self._logger.warning(f"[ORCH] {slot.name} shares address {address} with another slot; skipped")
                continue

            descriptor = ContractDescriptor.from_artifact(slot.name, config.get_abi(slot.abi_name))
            if not descriptor.event_names():
                self._logger.warning(f"[ORCH] {slot.name}: ABI '{slot.abi_name}' declares no events; skipped")
                continue

            seen.add(address.lower())
            bindings.append(
                ContractBinding(
                    name=slot.name,
                    address=address,
                    descriptor=descriptor,
                    handlers=self._recorder.build_handlers(descriptor, address),
                )
            )
            self._logger.info(f"[ORCH] Bound {slot.name} at {address} ({len(descriptor.event_names())} events)")

        if not bindings:
            self._logger.warning("[ORCH] No valid contracts configured; nothing to index")
        self.bindings = bindings
        return bindings

    async def initial_backfill(self) -> list[BackfillResult | BaseException]:
        """Backfill all bindings concurrently and wait for every one to finish."""
        results = await asyncio.gather(
            *(self._backfill.backfill(binding) for binding in self.bindings),
            return_exceptions=True,
        )
        for binding, result in zip(self.bindings, results):
            if isinstance(result, BaseException):
                self._logger.error(
                    f"[ORCH] Initial backfill failed for {binding.name}: {result}",
                    extra={"contract": binding.address_lower, "error": str(result)},
                )
            else:
                self._logger.info(
                    f"[ORCH] Initial backfill {binding.name}: cursor={result.cursor} "
                    f"safe_tip={result.safe_tip} inserted={result.inserted}"
                )
        return list(results)

    async def run_once(self) -> list[BackfillResult | BaseException]:
        """Single backfill pass over all valid contracts (no live mode)."""
        self.build_bindings()
        return await self.initial_backfill()

    async def start(self) -> None:
        self.build_bindings()
        await self.initial_backfill()
        self._live_tail.attach(self.bindings)
        await self._gateway.start()
        self._logger.info(
            f"[ORCH] Live mode: {len(self.bindings)} contract(s) via {self._gateway.transport_name}"
        )

    async def stop(self) -> None:
        await self._gateway.stop()
        self._logger.info("[ORCH] Stopped")
