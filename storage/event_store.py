"""
Event store: deduplicated, append-only sink for indexed logs.

Both record kinds are unique on (tx_hash, log_index). Inserting an
existing pair is a no-op reported as "not inserted", never an error.
Any other constraint violation propagates.
Read-side queries serve downstream analytics.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from sqlalchemy import Table, func, insert, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from indexer_logging.logger_manager import setup_module_logger
from shared.types import EventRecord, RecordFilter, TxRecord
from storage.database import events, txs

RecordKind = Literal["tx", "event"]


class EventStore:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._logger = setup_module_logger(
            "event_store", "event_store.log", module_folder="Storage_Logs"
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def upsert_if_absent(self, record: TxRecord | EventRecord) -> bool:
        """Insert unless (tx_hash, log_index) exists. Returns True if a row was written."""
        table = txs if isinstance(record, TxRecord) else events
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(table).values(**record.as_row()))
        except IntegrityError:
            # Only the (tx_hash, log_index) key counts as a duplicate
            if not self._exists(table, record.tx_hash, record.log_index):
                raise
            self._logger.debug(
                f"[STORE] {table.name} duplicate ignored: {record.tx_hash}:{record.log_index}"
            )
            return False
        return True

    def _exists(self, table: Table, tx_hash: str, log_index: int) -> bool:
        stmt = select(table.c.id).where(table.c.tx_hash == tx_hash, table.c.log_index == log_index)
        with self._engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    @staticmethod
    def _table(kind: RecordKind) -> Table:
        return txs if kind == "tx" else events

    @staticmethod
    def _where(table: Table, record_filter: RecordFilter | None) -> list[Any]:
        if record_filter is None:
            return []
        name_col = table.c.event if table is txs else table.c.name
        clauses: list[Any] = []
        if record_filter.contract:
            clauses.append(table.c.contract == record_filter.contract.lower())
        if record_filter.events:
            clauses.append(name_col.in_(record_filter.events))
        if record_filter.user:
            user = record_filter.user.lower()
            matches = [func.lower(table.c.args["user"].as_string()) == user]
            if table is txs:
                matches += [table.c.from_address == user, table.c.to_address == user]
            clauses.append(or_(*matches))
        return clauses

    async def query_recent(
        self,
        record_filter: RecordFilter | None = None,
        limit: int = 20,
        kind: RecordKind = "tx",
    ) -> list[dict[str, Any]]:
        """Newest first by (block_number, log_index)."""
        table = self._table(kind)
        stmt = (
            select(table)
            .where(*self._where(table, record_filter))
            .order_by(table.c.block_number.desc(), table.c.log_index.desc())
            .limit(limit)
        )
        with self._engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    async def query_range(
        self,
        record_filter: RecordFilter | None,
        from_time: datetime,
        to_time: datetime,
        kind: RecordKind = "tx",
    ) -> list[dict[str, Any]]:
        """Records with block time in [from_time, to_time), oldest first."""
        table = self._table(kind)
        time_col = table.c.block_time if table is txs else table.c.ts
        stmt = (
            select(table)
            .where(time_col >= from_time, time_col < to_time, *self._where(table, record_filter))
            .order_by(time_col.asc(), table.c.block_number.asc(), table.c.log_index.asc())
        )
        with self._engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    async def count(self, kind: RecordKind = "tx") -> int:
        table = self._table(kind)
        with self._engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(table)).scalar_one())
