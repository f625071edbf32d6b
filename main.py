"""
KWH Event Indexer: Main Entrypoint.

Single-process asyncio service that backfills contract events from an EVM
node into durable storage, then follows the chain tip:
    1. RpcGateway: HTTP queries + websocket/polling notifications
    2. BackfillEngine: cursor-driven, batched historical sync
    3. LiveTailEngine: push listeners + single-flight catch-up per block

Storage is reached through SQLAlchemy; a missing or unreachable database is
fatal, since indexing without durable cursors would not be resumable.

Usage:
    python main.py                 # run (backfill, then live mode)
    python main.py backfill        # one backfill pass, then exit
    python main.py events --limit 5 --event Transfer
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from config.loader import get_config, load_indexer_settings
from config.validate import ConfigValidationError, validate_all_configs
from indexer_logging.logger_manager import create_module_log_directories, level_from_config, setup_module_logger
from shared.serialization_utils import dumps
from shared.types import IndexerSettings, RecordFilter

if TYPE_CHECKING:
    from storage.event_store import EventStore

_logger = setup_module_logger(
    "main", "main.log", level=level_from_config(), module_folder="Main_Logs", use_console=True
)


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _truncate(url: str) -> str:
    if not url:
        return "(not set)"
    return f"{url[:25]}...{url[-6:]}" if len(url) > 31 else url


def _log_banner(settings: IndexerSettings, storage_url: str) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("KWH Event Indexer starting")
    _logger.info("=" * 60)
    _logger.info("  chain_id        : %s", settings.chain_id)
    _logger.info("  rpc (http)      : %s", _truncate(settings.rpc_http_url))
    _logger.info("  rpc (ws)        : %s", _truncate(settings.rpc_ws_url))
    _logger.info("  poll interval   : %.1fs", settings.poll_interval_seconds)
    _logger.info("  start_block     : %s", "(fallback window)" if settings.start_block is None else settings.start_block)
    _logger.info("  confirmations   : %s", settings.confirmations)
    _logger.info("  batch_size      : %s", settings.batch_size)
    _logger.info("  storage         : %s", storage_url)
    for slot in settings.contracts:
        _logger.info(
            "  %-16s: %s%s", slot.name, slot.address or "(not set)", " [primary]" if slot.required else ""
        )
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback: detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Shut down if the indexer task dies with an unhandled exception."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="KWH contract event indexer")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Backfill, then follow the chain tip (default)")
    sub.add_parser("backfill", help="Run one backfill pass for all contracts and exit")

    events = sub.add_parser("events", help="Print recently indexed records as JSON")
    events.add_argument("--limit", type=int, default=None)
    events.add_argument("--kind", choices=("tx", "event"), default="tx")
    events.add_argument("--contract", default=None)
    events.add_argument("--event", action="append", default=[], dest="events")
    events.add_argument("--user", default=None)
    return parser


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _print_events(event_store: EventStore, args: argparse.Namespace) -> None:
    limit = args.limit or int(get_config().get_indexer_config().get("events_query_limit", 20))
    record_filter = RecordFilter(contract=args.contract, events=tuple(args.events), user=args.user)
    rows = await event_store.query_recent(record_filter, limit=limit, kind=args.kind)
    print(dumps(rows, indent=2))


async def _run(args: argparse.Namespace) -> int:
    """Wire all components and run the selected command. Returns the exit code."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()
    create_module_log_directories()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        return 1

    settings = load_indexer_settings()

    # ------------------------------------------------------------------
    # 2. Storage (fatal when missing or unreachable)
    # ------------------------------------------------------------------
    from storage.cursor_store import CursorStore
    from storage.database import StorageConnectionError, connect_storage, mask_url
    from storage.event_store import EventStore

    try:
        engine = connect_storage(
            settings.database_url, echo=bool(get_config().get_indexer_config().get("storage", {}).get("echo"))
        )
    except StorageConnectionError as exc:
        _logger.critical("Storage unavailable: %s", exc)
        return 1

    cursor_store = CursorStore(engine)
    event_store = EventStore(engine)

    if args.command == "events":
        await _print_events(event_store, args)
        engine.dispose()
        return 0

    await cursor_store.seed_bootstrap(settings.start_block)
    _log_banner(settings, mask_url(settings.database_url))

    # ------------------------------------------------------------------
    # 3. Gateway + orchestrator (dependency order)
    # ------------------------------------------------------------------
    from chain.rpc_gateway import RpcGateway
    from core.orchestrator import IndexerConfigError, IndexerOrchestrator

    gateway = RpcGateway.from_settings(settings)
    orchestrator = IndexerOrchestrator(settings, gateway, cursor_store, event_store)

    if args.command == "backfill":
        try:
            results = await orchestrator.run_once()
        except IndexerConfigError as exc:
            _logger.critical("%s", exc)
            return 1
        finally:
            engine.dispose()
        return 1 if any(isinstance(r, BaseException) for r in results) else 0

    # ------------------------------------------------------------------
    # 4. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 5. Launch the indexer and wait
    # ------------------------------------------------------------------
    task_start = asyncio.create_task(orchestrator.start(), name="indexer_start")
    task_start.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    exit_code = 0
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down")
        if not task_start.done():
            task_start.cancel()
        results = await asyncio.gather(task_start, return_exceptions=True)
        if isinstance(results[0], Exception):
            exit_code = 1

        timeout = get_config().get_timing_config().get("shutdown_timeout_seconds", 10)
        try:
            await asyncio.wait_for(orchestrator.stop(), timeout=timeout)
        except asyncio.TimeoutError:
            _logger.warning("Transport did not stop within %ss", timeout)
        engine.dispose()
        _logger.info("Shutdown complete")
    return exit_code


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Synchronous entry point."""
    args = _build_parser().parse_args(argv)
    if args.command is None:
        args.command = "run"
    try:
        exit_code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
