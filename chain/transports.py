"""
Block and log notification transports for the RPC gateway.

PollingTransport polls eth_blockNumber and fetches logs for each newly seen
range. WebSocketTransport uses eth_subscribe (newHeads + logs) and fails over
to a PollingTransport while the socket is down, with exponential backoff and
jitter on reconnect.

Callbacks are coroutines; each dispatch runs as its own tracked task so a
slow or failing handler never stalls the notification loop.
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import websockets
from web3 import AsyncWeb3

from config.loader import get_config
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_BATCH_SIZE, DEFAULT_POLL_INTERVAL_SECONDS
from shared.serialization_utils import to_int
from shared.types import RawLog

BlockCallback = Callable[[int], Awaitable[Any]]
LogCallback = Callable[[RawLog], Awaitable[Any]]


class _Subscriptions:
    """Callback registry and task tracking shared by both transports."""

    name = "base"

    def __init__(self, logger_name: str):
        self._logger = setup_module_logger(
            logger_name, f"{logger_name}.log", module_folder="RPC_Gateway_Logs"
        )
        self._block_callbacks: list[BlockCallback] = []
        self._log_callbacks: dict[tuple[str, str], list[LogCallback]] = {}
        self._tasks: set[asyncio.Task] = set()

    def on_new_block(self, callback: BlockCallback) -> None:
        self._block_callbacks.append(callback)

    def on_log(self, address: str, topic: str, callback: LogCallback) -> None:
        self._log_callbacks.setdefault((address.lower(), topic.lower()), []).append(callback)

    @property
    def log_filters(self) -> list[tuple[str, str]]:
        return list(self._log_callbacks)

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        task = asyncio.create_task(coro, name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                f"[{self.name.upper()}] Callback task '{task.get_name()}' failed: {exc}",
                extra={"error": str(exc)},
            )

    def _dispatch_block(self, block_number: int) -> None:
        for callback in self._block_callbacks:
            self._spawn(callback(block_number), f"block:{block_number}")

    def _dispatch_log(self, raw_log: RawLog) -> None:
        if raw_log.removed or raw_log.topic0 is None:
            return
        for callback in self._log_callbacks.get((raw_log.address, raw_log.topic0), []):
            self._spawn(callback(raw_log), f"log:{raw_log.transaction_hash}:{raw_log.log_index}")

    async def _cancel_tasks(self) -> None:
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class PollingTransport(_Subscriptions):
    """
    Interval polling over HTTP JSON-RPC.

    Each poll fetches logs for at most `max_range` blocks behind the tip;
    older gaps are left to the new-block catch-up backfill.
    """

    name = "polling"

    def __init__(
        self,
        w3: AsyncWeb3,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_range: int = DEFAULT_BATCH_SIZE,
    ):
        super().__init__("polling_transport")
        self._w3 = w3
        self._poll_interval = poll_interval
        self._max_range = max(1, max_range)
        self._last_block: int | None = None
        self._runner: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def last_block(self) -> int | None:
        return self._last_block

    def resume_from(self, block_number: int | None) -> None:
        """Next poll delivers logs from block_number + 1 onward."""
        self._last_block = block_number

    async def start(self) -> None:
        if self.running:
            return
        self._logger.info(f"[POLLING] Starting, interval={self._poll_interval}s")
        self._runner = asyncio.create_task(self._run(), name="polling-transport")

    async def stop(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        await self._cancel_tasks()

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning(f"[POLLING] Poll failed: {e}", extra={"error": str(e)})
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int | None:
        """One poll step. Returns the tip seen, or None when nothing is new."""
        tip = await self._w3.eth.block_number
        if self._last_block is None:
            self._last_block = tip
            return None
        if tip <= self._last_block:
            return None

        from_block = max(self._last_block + 1, tip - self._max_range + 1)
        if from_block > self._last_block + 1:
            self._logger.info(
                f"[POLLING] Skipping live logs for {self._last_block + 1}..{from_block - 1}; "
                f"catch-up backfill covers them",
                extra={"from_block": self._last_block + 1, "to_block": from_block - 1},
            )
        self._last_block = tip

        for address, topic in self.log_filters:
            try:
                entries = await self._w3.eth.get_logs(
                    {
                        "address": AsyncWeb3.to_checksum_address(address),
                        "fromBlock": from_block,
                        "toBlock": tip,
                        "topics": [topic],
                    }
                )
            except Exception as e:
                self._logger.warning(
                    f"[POLLING] getLogs {address} {topic[:10]} {from_block}..{tip} failed: {e}",
                    extra={"contract": address, "from_block": from_block, "to_block": tip, "error": str(e)},
                )
                continue
            for entry in entries:
                self._dispatch_log(RawLog.from_rpc(entry))

        # Fires even when log queries failed
        self._dispatch_block(tip)
        return tip


class WebSocketTransport(_Subscriptions):
    """eth_subscribe over a websocket, with polling failover while disconnected."""

    name = "websocket"

    def __init__(self, ws_url: str, fallback: PollingTransport):
        super().__init__("websocket_transport")
        self._ws_url = ws_url
        self._fallback = fallback
        self._runner: asyncio.Task | None = None
        self._last_block: int | None = None
        self._connected = asyncio.Event()

        ws_cfg = get_config().get_timing_config().get("websocket", {})
        self._ping_interval = ws_cfg.get("ping_interval_seconds", 20)
        self._ping_timeout = ws_cfg.get("ping_timeout_seconds", 20)
        self._close_timeout = ws_cfg.get("close_timeout_seconds", 10)
        self._base_delay = ws_cfg.get("reconnect_base_delay_seconds", 1.0)
        self._max_delay = ws_cfg.get("reconnect_max_delay_seconds", 60.0)
        self._jitter = ws_cfg.get("reconnect_jitter_seconds", 1.0)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def fallback(self) -> PollingTransport:
        return self._fallback

    def on_new_block(self, callback: BlockCallback) -> None:
        super().on_new_block(callback)
        self._fallback.on_new_block(callback)

    def on_log(self, address: str, topic: str, callback: LogCallback) -> None:
        super().on_log(address, topic, callback)
        self._fallback.on_log(address, topic, callback)

    async def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run(), name="websocket-transport")

    async def stop(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self._connected.clear()
        await self._fallback.stop()
        await self._cancel_tasks()

    def reconnect_delay(self, retry_count: int) -> float:
        return min(
            self._base_delay * (2**retry_count) + random.uniform(0, self._jitter),
            self._max_delay,
        )

    def _subscription_requests(self) -> list[dict[str, Any]]:
        requests = [{"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}]
        topics_by_address: dict[str, list[str]] = {}
        for address, topic in self.log_filters:
            topics_by_address.setdefault(address, []).append(topic)
        for i, (address, topics) in enumerate(sorted(topics_by_address.items()), start=2):
            requests.append(
                {
                    "jsonrpc": "2.0",
                    "id": i,
                    "method": "eth_subscribe",
                    "params": [
                        "logs",
                        {"address": AsyncWeb3.to_checksum_address(address), "topics": [topics]},
                    ],
                }
            )
        return requests

    async def _enter_fallback(self) -> None:
        self._connected.clear()
        if not self._fallback.running:
            self._fallback.resume_from(self._last_block)
            self._logger.warning("[WEBSOCKET] Disconnected, failing over to polling")
            await self._fallback.start()

    async def _leave_fallback(self) -> None:
        if self._fallback.running:
            last = self._fallback.last_block
            if last is not None:
                self._last_block = max(self._last_block or 0, last)
            await self._fallback.stop()
            self._logger.info("[WEBSOCKET] Reconnected, polling failover stopped")
        self._connected.set()

    async def _run(self) -> None:
        retry_count = 0
        while True:
            try:
                self._logger.info(f"[WEBSOCKET] Connecting to {self._ws_url[:60]}...")
                async with websockets.connect(
                    self._ws_url,
                    ping_interval=self._ping_interval,
                    ping_timeout=self._ping_timeout,
                    close_timeout=self._close_timeout,
                    max_size=10 * 1024 * 1024,
                ) as ws:
                    pending: dict[int, str] = {}
                    for request in self._subscription_requests():
                        pending[request["id"]] = request["params"][0]
                        await ws.send(json.dumps(request))

                    routes: dict[str, str] = {}
                    await self._leave_fallback()
                    retry_count = 0

                    async for raw_message in ws:
                        self._handle_message(raw_message, pending, routes)

                self._logger.warning("[WEBSOCKET] Connection closed by server")
            except asyncio.CancelledError:
                self._logger.info("[WEBSOCKET] Cancelled, shutting down.")
                raise
            except (websockets.exceptions.ConnectionClosed, OSError) as e:
                self._logger.warning(f"[WEBSOCKET] Connection lost: {e}", extra={"error": str(e)})
            except Exception as e:
                self._logger.error(f"[WEBSOCKET] Unexpected error: {e}", extra={"error": str(e)})

            await self._enter_fallback()
            retry_count += 1
            delay = self.reconnect_delay(retry_count)
            self._logger.info(f"[WEBSOCKET] Reconnect attempt {retry_count} in {delay:.1f}s")
            await asyncio.sleep(delay)

    def _handle_message(self, raw_message: Any, pending: dict[int, str], routes: dict[str, str]) -> None:
        try:
            message = json.loads(raw_message)
        except json.JSONDecodeError as e:
            self._logger.warning(f"[WEBSOCKET] Invalid JSON message: {e}")
            return

        # Subscription confirmations: {"id": n, "result": "<sub id>"}
        if "id" in message and message.get("id") in pending:
            kind = pending.pop(message["id"])
            if "error" in message:
                self._logger.error(f"[WEBSOCKET] {kind} subscription error: {message['error']}")
            else:
                routes[message.get("result")] = kind
                self._logger.info(f"[WEBSOCKET] Subscribed to {kind} ({message.get('result')})")
            return

        if message.get("method") != "eth_subscription":
            return
        params = message.get("params", {})
        kind = routes.get(params.get("subscription"))
        result = params.get("result") or {}
        if kind == "newHeads":
            block_number = to_int(result.get("number"))
            if block_number is not None:
                self._last_block = block_number
                self._dispatch_block(block_number)
        elif kind == "logs":
            self._dispatch_log(RawLog.from_rpc(result))
