"""
RPC gateway for the KWH event indexer.

Wraps an AsyncWeb3 HTTP connection plus a notification transport (websocket
push with polling failover, or pure polling) and exposes the queries the
sync engines need:
- latest_block_number(): retried, raises RpcGatewayError when exhausted
- get_block(n) / get_transaction_receipt(h): retried with linear backoff,
  return None instead of raising after retries
- get_block_timestamp(n): cached, drop-all eviction on overflow
- get_logs(addresses, from, to, topics): errors propagate to the caller
- subscribe_new_blocks / subscribe_event: delegated to the transport
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3

from chain.transports import BlockCallback, LogCallback, PollingTransport, WebSocketTransport
from config.loader import get_config
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import (
    DEFAULT_BLOCK_CACHE_SIZE,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
)
from shared.serialization_utils import to_hex
from shared.types import BlockInfo, IndexerSettings, RawLog, Receipt


class RpcGatewayError(Exception):
    """Raised when the node cannot answer a query the caller cannot do without."""

    pass


class RpcGateway:
    """
    Single owner of the node connection.

    Constructed once at startup and passed by reference to every component
    that talks to the chain.
    """

    def __init__(self, w3: AsyncWeb3, transport: PollingTransport | WebSocketTransport):
        self._w3 = w3
        self._transport = transport

        timing = get_config().get_timing_config()
        self._retry_attempts = int(timing.get("rpc_retry_attempts", DEFAULT_RETRY_ATTEMPTS))
        self._retry_backoff = float(timing.get("rpc_retry_backoff_seconds", DEFAULT_RETRY_BACKOFF_SECONDS))
        self._cache_size = int(timing.get("block_cache_size", DEFAULT_BLOCK_CACHE_SIZE))

        self._block_time_cache: dict[int, int] = {}

        self._logger = setup_module_logger(
            "rpc_gateway", "rpc_gateway.log", module_folder="RPC_Gateway_Logs"
        )

    @classmethod
    def from_settings(cls, settings: IndexerSettings) -> RpcGateway:
        """Build the HTTP connection and pick websocket or polling notifications."""
        w3 = AsyncWeb3(AsyncHTTPProvider(settings.rpc_http_url))
        polling = PollingTransport(w3, settings.poll_interval_seconds, max_range=settings.batch_size)
        transport: PollingTransport | WebSocketTransport = polling
        if settings.rpc_ws_url:
            transport = WebSocketTransport(settings.rpc_ws_url, fallback=polling)
        return cls(w3, transport)

    @property
    def w3(self) -> AsyncWeb3:
        return self._w3

    @property
    def transport_name(self) -> str:
        return self._transport.name

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def latest_block_number(self) -> int:
        last_error: Exception | None = None
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return int(await self._w3.eth.block_number)
            except Exception as e:
                last_error = e
                self._logger.warning(
                    f"[RPC] eth_blockNumber failed (attempt {attempt}/{self._retry_attempts}): {e}"
                )
                if attempt < self._retry_attempts:
                    await asyncio.sleep(self._retry_backoff * attempt)
        raise RpcGatewayError(f"eth_blockNumber failed after {self._retry_attempts} attempts: {last_error}")

    async def get_block(self, block_number: int) -> BlockInfo | None:
        """Fetch a block header; transient misses are retried, then None."""
        for attempt in range(1, self._retry_attempts + 1):
            try:
                block = await self._w3.eth.get_block(block_number)
                if block:
                    return BlockInfo(
                        number=int(block["number"]),
                        hash=to_hex(block.get("hash")),
                        timestamp=int(block["timestamp"]),
                    )
            except Exception as e:
                self._logger.debug(f"[RPC] get_block({block_number}) attempt {attempt} failed: {e}")
            if attempt < self._retry_attempts:
                await asyncio.sleep(self._retry_backoff * attempt)

        self._logger.warning(
            f"[RPC] Block {block_number} unavailable after {self._retry_attempts} attempts",
            extra={"block_number": block_number},
        )
        return None

    async def get_block_timestamp(self, block_number: int | None) -> int | None:
        """Unix timestamp for a block, or None when the node cannot provide it."""
        if block_number is None:
            return None
        cached = self._block_time_cache.get(block_number)
        if cached is not None:
            return cached

        block = await self.get_block(block_number)
        if block is None:
            return None
        if len(self._block_time_cache) >= self._cache_size:
            self._block_time_cache.clear()
        self._block_time_cache[block_number] = block.timestamp
        return block.timestamp

    async def get_logs(
        self,
        addresses: Sequence[str],
        from_block: int,
        to_block: int,
        topics: Sequence[Any] | None = None,
    ) -> list[RawLog]:
        """eth_getLogs over [from_block, to_block] inclusive. Errors propagate."""
        params: dict[str, Any] = {
            "address": [AsyncWeb3.to_checksum_address(a) for a in addresses],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if topics:
            params["topics"] = list(topics)
        entries = await self._w3.eth.get_logs(params)
        return [RawLog.from_rpc(entry) for entry in entries]

    async def get_transaction_receipt(self, log_or_hash: RawLog | str | None) -> Receipt | None:
        """Receipt for a log's transaction (or a raw hash). Never raises."""
        tx_hash = log_or_hash.transaction_hash if isinstance(log_or_hash, RawLog) else log_or_hash
        if not tx_hash:
            return None

        for attempt in range(1, self._retry_attempts + 1):
            try:
                receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
                if receipt:
                    return Receipt.from_rpc(receipt)
            except Exception as e:
                self._logger.debug(f"[RPC] Receipt {tx_hash} attempt {attempt} failed: {e}")
            if attempt < self._retry_attempts:
                await asyncio.sleep(self._retry_backoff * attempt)

        self._logger.warning(
            f"[RPC] Receipt unavailable for {tx_hash}", extra={"tx_hash": tx_hash}
        )
        return None

    # ------------------------------------------------------------------
    # Subscriptions / lifecycle
    # ------------------------------------------------------------------

    def subscribe_new_blocks(self, callback: BlockCallback) -> None:
        self._transport.on_new_block(callback)

    def subscribe_event(self, address: str, topic: str, callback: LogCallback) -> None:
        self._transport.on_log(address, topic, callback)

    async def start(self) -> None:
        self._logger.info(f"[RPC] Starting {self.transport_name} transport")
        await self._transport.start()

    async def stop(self) -> None:
        await self._transport.stop()
        self._logger.info("[RPC] Transport stopped")
