"""
Database schema and connection for the KWH event indexer.

SQLAlchemy Core over any SQLAlchemy URL (SQLite by default, PostgreSQL in
deployment). Three tables:
- cursors: per-contract progress markers (plus the reserved bootstrap key)
- txs:     transaction-level record per log, unique on (tx_hash, log_index)
- events:  fine-grained event record with a UTC day key, same uniqueness

Usage:
    from storage.database import connect_storage

    engine = connect_storage("sqlite:///data/indexer.db")
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.types import JSON

from indexer_logging.logger_manager import setup_module_logger
from shared.serialization_utils import dumps

logger = setup_module_logger("storage", "storage.log", module_folder="Storage_Logs")


class StorageConnectionError(Exception):
    """Storage is unreachable or unconfigured. Fatal at startup."""

    pass


metadata = MetaData()

cursors = Table(
    "cursors",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("block_number", BigInteger, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

txs = Table(
    "txs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chain_id", Integer, nullable=False),
    Column("block_number", BigInteger),
    Column("block_hash", String(66)),
    Column("tx_hash", String(66), nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("contract", String(42), nullable=False),
    Column("event", String(128), nullable=False),
    Column("args", JSON, nullable=False),
    Column("from_address", String(42)),
    Column("to_address", String(42)),
    Column("status", String(16), nullable=False),
    Column("block_time", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tx_hash", "log_index", name="uq_txs_txhash_logindex"),
    Index("ix_txs_contract_event_block", "contract", "event", "block_number"),
    Index("ix_txs_block_time", "block_time"),
)

events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chain_id", Integer, nullable=False),
    Column("block_number", BigInteger),
    Column("tx_hash", String(66), nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("contract", String(42), nullable=False),
    Column("name", String(128), nullable=False),
    Column("args", JSON, nullable=False),
    Column("ts", DateTime(timezone=True), nullable=False),
    Column("day_key", String(10), nullable=False),
    UniqueConstraint("tx_hash", "log_index", name="uq_events_txhash_logindex"),
    Index("ix_events_contract_name_block", "contract", "name", "block_number"),
    Index("ix_events_day_key", "day_key"),
)


def mask_url(url: str) -> str:
    """Render a database URL with the password hidden."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<invalid url>"


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database or parsed.database == ":memory:":
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def connect_storage(url: str | None, echo: bool = False) -> Engine:
    """
    Create the engine, verify connectivity, and create missing tables.

    Raises:
        StorageConnectionError: URL missing/invalid or the database is unreachable.
    """
    if not url:
        raise StorageConnectionError("No storage URL configured (set DATABASE_URL)")

    try:
        _ensure_sqlite_dir(url)
        engine = create_engine(url, echo=echo, json_serializer=dumps, future=True)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        metadata.create_all(engine)
    except (ArgumentError, SQLAlchemyError, OSError) as e:
        logger.critical(f"[STORAGE] Connection failed for {mask_url(url)}: {e}", extra={"error": str(e)})
        raise StorageConnectionError(f"Cannot connect to {mask_url(url)}: {e}") from e

    logger.info(f"[STORAGE] Connected: {mask_url(url)}")
    return engine
