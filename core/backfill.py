"""
Backfill engine: historical catch-up for one contract at a time.

Per call:
1. safe_tip = latest block - confirmations
2. start = stored cursor, else configured start block, else
   max(0, safe_tip - fallback_window)
3. start > safe_tip -> nothing to do
4. walk [start, safe_tip] in end-inclusive batches; for every event
   signature fetch logs, fetch receipts (memoized per batch), decode +
   persist, then move the cursor to `to + 1`

A batch with failing event signatures is retried on later calls up to
failed_batch_retries attempts; after that the cursor moves past it and the
failures are logged as errors. A crash mid-batch leaves the cursor on the
batch start, so the batch is re-processed; duplicate writes are no-ops.
"""

from __future__ import annotations

from chain.rpc_gateway import RpcGateway
from config.loader import get_config
from indexer_logging.logger_manager import setup_module_logger
from shared.types import BackfillResult, ContractBinding, IndexerSettings, Receipt
from storage.cursor_store import CursorStore, cursor_key


class BackfillEngine:
    def __init__(self, gateway: RpcGateway, cursor_store: CursorStore, settings: IndexerSettings):
        self._gateway = gateway
        self._cursors = cursor_store
        self._settings = settings
        # cursor key -> (batch start, failed attempts so far)
        self._failed_batches: dict[str, tuple[int, int]] = {}

        log_cfg = get_config().get_app_config().get("logging", {})
        self._logger = setup_module_logger(
            "backfill_engine",
            "backfill_engine.log",
            module_folder="Backfill_Logs",
            use_json_formatter=bool(log_cfg.get("use_json", False)),
        )

    async def resolve_start_block(self, binding: ContractBinding, safe_tip: int) -> int:
        stored = await self._cursors.get(cursor_key(binding.address))
        if stored is not None and stored >= 0:
            return stored
        if self._settings.start_block is not None and self._settings.start_block >= 0:
            return self._settings.start_block
        return max(0, safe_tip - self._settings.fallback_window)

    async def backfill(self, binding: ContractBinding) -> BackfillResult:
        """Sync one contract from its cursor up to the confirmation-safe tip."""
        latest = await self._gateway.latest_block_number()
        safe_tip = latest - self._settings.confirmations
        start = await self.resolve_start_block(binding, safe_tip)
        result = BackfillResult(contract=binding.name, start_block=start, safe_tip=safe_tip)

        if start > safe_tip:
            self._logger.debug(f"[BACKFILL] {binding.name} caught up (start={start} safe_tip={safe_tip})")
            result.cursor = start
            return result

        key = cursor_key(binding.address)
        batch_size = self._settings.batch_size
        from_block = start
        self._logger.info(
            f"[BACKFILL] {binding.name} {binding.address} blocks {start}..{safe_tip}",
            extra={"contract": binding.address_lower, "from_block": start, "to_block": safe_tip},
        )

        while from_block <= safe_tip:
            to_block = min(from_block + batch_size - 1, safe_tip)
            failed = await self.sync_range(binding, from_block, to_block, result)
            result.batches += 1

            if failed:
                result.failed_events.extend(failed)
                if self._hold_failed_batch(binding, key, from_block, to_block, failed):
                    break
            else:
                self._failed_batches.pop(key, None)

            await self._cursors.set(key, to_block + 1)
            result.cursor = to_block + 1
            from_block = to_block + 1

        self._logger.info(
            f"[BACKFILL] {binding.name} done: batches={result.batches} logs={result.logs_seen} "
            f"inserted={result.inserted} cursor={result.cursor}"
        )
        return result

    def _hold_failed_batch(
        self, binding: ContractBinding, key: str, from_block: int, to_block: int, failed: list[str]
    ) -> bool:
        """Count a failed attempt on [from_block, to_block]. True while the cursor should stay put."""
        held_start, attempts = self._failed_batches.get(key, (from_block, 0))
        attempts = attempts + 1 if held_start == from_block else 1
        limit = self._settings.failed_batch_retries
        extra = {"contract": binding.address_lower, "from_block": from_block, "to_block": to_block}

        if attempts < limit:
            self._failed_batches[key] = (from_block, attempts)
            self._logger.warning(
                f"[BACKFILL] {binding.name} batch {from_block}..{to_block} incomplete "
                f"(failed: {', '.join(failed)}); attempt {attempts}/{limit}, cursor held at {from_block}",
                extra=extra,
            )
            return True

        self._failed_batches.pop(key, None)
        self._logger.error(
            f"[BACKFILL] {binding.name} batch {from_block}..{to_block} still failing for "
            f"{', '.join(failed)} after {attempts} attempt(s); advancing past it",
            extra=extra,
        )
        return False

    async def sync_range(
        self,
        binding: ContractBinding,
        from_block: int,
        to_block: int,
        result: BackfillResult | None = None,
    ) -> list[str]:
        """
        Process every event signature of the contract over [from_block, to_block].

        Returns the event names that failed; the others are still processed.
        """
        failed: list[str] = []
        receipts: dict[str, Receipt | None] = {}
        descriptor = binding.descriptor

        for fragment in descriptor.fragments():
            event_name, topic = fragment.name, fragment.topic
            handler = binding.handlers.get(event_name)
            if handler is None:
                continue
            try:
                logs = await self._gateway.get_logs([binding.address], from_block, to_block, topics=[topic])
                logs.sort(key=lambda entry: (entry.block_number or 0, entry.log_index or 0))
                for raw_log in logs:
                    tx_hash = raw_log.transaction_hash
                    if tx_hash not in receipts:
                        receipts[tx_hash] = await self._gateway.get_transaction_receipt(raw_log)
                    inserted = await handler(raw_log, receipts[tx_hash])
                    if result is not None:
                        result.logs_seen += 1
                        result.inserted += int(inserted)
            except Exception as e:
                self._logger.warning(
                    f"[BACKFILL] {binding.name}.{event_name} {from_block}..{to_block} failed: {e}",
                    extra={
                        "contract": binding.address_lower,
                        "event_name": event_name,
                        "from_block": from_block,
                        "to_block": to_block,
                        "error": str(e),
                    },
                )
                failed.append(event_name)
        return failed
