"""
Progress tracker: durable per-contract "next block to process" markers.

Keys are "events:" + lowercased contract address, so repeated derivation
for the same address always yields the same key and contracts never collide.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from indexer_logging.logger_manager import setup_module_logger
from shared.constants import BOOTSTRAP_CURSOR_KEY, CURSOR_NAMESPACE
from storage.database import cursors


def cursor_key(address: str) -> str:
    return CURSOR_NAMESPACE + address.strip().lower()


class CursorStore:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._logger = setup_module_logger(
            "cursor_store", "cursor_store.log", module_folder="Storage_Logs"
        )

    async def get(self, key: str) -> int | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(cursors.c.block_number).where(cursors.c.key == key)
            ).first()
        return None if row is None else int(row.block_number)

    async def set(self, key: str, block_number: int) -> None:
        """Upsert, last write wins."""
        now = datetime.now(timezone.utc)
        with self._engine.begin() as conn:
            result = conn.execute(
                update(cursors)
                .where(cursors.c.key == key)
                .values(block_number=block_number, updated_at=now)
            )
            if result.rowcount == 0:
                conn.execute(insert(cursors).values(key=key, block_number=block_number, updated_at=now))
        self._logger.debug(f"[CURSOR] {key} -> {block_number}")

    async def seed(self, key: str, block_number: int) -> bool:
        """Insert only when the key is absent. Returns True if written."""
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(cursors).values(
                        key=key, block_number=block_number, updated_at=datetime.now(timezone.utc)
                    )
                )
        except IntegrityError:
            return False
        return True

    async def seed_bootstrap(self, start_block: int | None) -> bool:
        value = max(0, (start_block or 0) - 1)
        seeded = await self.seed(BOOTSTRAP_CURSOR_KEY, value)
        if seeded:
            self._logger.info(f"[CURSOR] Seeded {BOOTSTRAP_CURSOR_KEY} = {value}")
        return seeded
