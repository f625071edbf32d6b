"""
Live tail engine: push listeners plus new-block catch-up.

For each binding, one listener per event name decodes and persists pushed
logs (receipt lookup is best-effort). A single new-block subscription runs
a catch-up backfill of every binding, guarded so that at most one catch-up
is in flight; triggers arriving meanwhile are dropped, not queued.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from chain.rpc_gateway import RpcGateway
from chain.transports import LogCallback
from core.backfill import BackfillEngine
from indexer_logging.logger_manager import setup_module_logger
from shared.types import ContractBinding, RawLog


class SingleFlight:
    """Non-blocking try-acquire guard released on every exit path."""

    def __init__(self) -> None:
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def run(self, fn: Callable[[], Awaitable[None]]) -> bool:
        """Run fn unless a run is in flight. Returns False when dropped."""
        if self._busy:
            return False
        self._busy = True
        try:
            await fn()
        finally:
            self._busy = False
        return True


class LiveTailEngine:
    def __init__(self, gateway: RpcGateway, backfill_engine: BackfillEngine):
        self._gateway = gateway
        self._backfill = backfill_engine
        self._bindings: list[ContractBinding] = []
        self._guard = SingleFlight()
        self.dropped_triggers = 0

        self._logger = setup_module_logger("live_tail", "live_tail.log", module_folder="Live_Tail_Logs")

    @property
    def syncing(self) -> bool:
        return self._guard.busy

    def attach(self, bindings: list[ContractBinding]) -> None:
        """Register event listeners for every binding and the new-block trigger."""
        self._bindings = list(bindings)
        for binding in self._bindings:
            for fragment in binding.descriptor.fragments():
                if fragment.name not in binding.handlers:
                    continue
                self._gateway.subscribe_event(
                    binding.address, fragment.topic, self._make_listener(binding, fragment.name)
                )
            self._logger.info(
                f"[LIVE] Listening on {binding.name} {binding.address}: "
                f"{', '.join(binding.descriptor.event_names())}"
            )
        self._gateway.subscribe_new_blocks(self.on_new_block)

    def _make_listener(self, binding: ContractBinding, event_name: str) -> LogCallback:
        handler = binding.handlers[event_name]

        async def listener(raw_log: RawLog) -> bool:
            receipt = await self._gateway.get_transaction_receipt(raw_log)
            try:
                return await handler(raw_log, receipt)
            except Exception as e:
                self._logger.error(
                    f"[LIVE] {binding.name}.{event_name} tx={raw_log.transaction_hash} not recorded: {e}",
                    extra={"event_name": event_name, "tx_hash": raw_log.transaction_hash, "error": str(e)},
                )
                return False

        return listener

    async def on_new_block(self, block_number: int) -> bool:
        """New-block trigger. Returns False when dropped by the in-flight guard."""
        ran = await self._guard.run(self._tail_sync)
        if not ran:
            self.dropped_triggers += 1
            self._logger.debug(f"[LIVE] Block {block_number}: catch-up already running, trigger dropped")
        return ran

    async def _tail_sync(self) -> None:
        await asyncio.gather(*(self._sync_one(binding) for binding in self._bindings))

    async def _sync_one(self, binding: ContractBinding) -> None:
        try:
            result = await self._backfill.backfill(binding)
        except Exception as e:
            self._logger.error(
                f"[LIVE] Catch-up failed for {binding.name}: {e}",
                extra={"contract": binding.address_lower, "error": str(e)},
            )
            return
        if result.inserted:
            self._logger.info(f"[LIVE] Catch-up {binding.name}: {result.inserted} new records")
