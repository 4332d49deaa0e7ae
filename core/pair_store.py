"""
SQLite persistence for tracked pairs.

One row per watched pool, keyed by pair address, so the watch list survives
restarts. ``lastBoughtAt`` (epoch ms) drives the stale-pair sweep.

Usage:
    from core.pair_store import PairStore

    store = PairStore()
    await store.create_table()
    await store.upsert(pair)
    stale = await store.get_stale(cutoff_ms)
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.types import TrackedPair

_COLUMNS = (
    "pair, memeTokenAddress, baseTokenAddress, memeTokenDecimals, "
    "baseTokenDecimals, lastBoughtAt"
)


class PairStoreError(Exception):
    """Raised when a pair store read or write fails."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class PairStore:
    """SQLite-backed table of tracked pairs."""

    def __init__(self, db_path: str | None = None) -> None:
        cfg = get_config()
        if db_path is None:
            db_path = cfg.get_db_path()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db_path = db_path
        self._db = sqlite3.connect(db_path)
        self._db.row_factory = sqlite3.Row

        journal_mode = cfg.get_storage_config().get("journal_mode")
        if journal_mode and db_path != ":memory:":
            self._db.execute(f"PRAGMA journal_mode={journal_mode}")

        self._logger = setup_module_logger(
            "pair_store", "pair_store.log", module_folder="Storage_Logs"
        )

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def create_table(self) -> None:
        """Create the tracked_pairs table and its lastBoughtAt index if missing."""
        try:
            self._db.executescript("""
                CREATE TABLE IF NOT EXISTS tracked_pairs (
                    pair TEXT PRIMARY KEY,
                    memeTokenAddress TEXT NOT NULL,
                    baseTokenAddress TEXT NOT NULL,
                    memeTokenDecimals INTEGER NOT NULL,
                    baseTokenDecimals INTEGER NOT NULL,
                    lastBoughtAt INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tracked_pairs_last_bought
                    ON tracked_pairs (lastBoughtAt);
            """)
            self._db.commit()
        except sqlite3.Error as e:
            raise PairStoreError(f"create_table failed: {e}") from e
        self._logger.info("tracked_pairs table ready (%s)", self._db_path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, pair: TrackedPair) -> None:
        """Insert or replace a pair; stamps lastBoughtAt with the current time."""
        try:
            self._db.execute(
                f"""INSERT INTO tracked_pairs ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(pair) DO UPDATE SET
                        memeTokenAddress = excluded.memeTokenAddress,
                        baseTokenAddress = excluded.baseTokenAddress,
                        memeTokenDecimals = excluded.memeTokenDecimals,
                        baseTokenDecimals = excluded.baseTokenDecimals,
                        lastBoughtAt = excluded.lastBoughtAt""",
                (
                    pair.pair,
                    pair.meme_token_address,
                    pair.base_token_address,
                    pair.meme_token_decimals,
                    pair.base_token_decimals,
                    _now_ms(),
                ),
            )
            self._db.commit()
        except sqlite3.Error as e:
            raise PairStoreError(f"upsert failed for {pair.pair}: {e}") from e
        self._logger.debug("Upserted pair %s", pair.pair)

    async def delete(self, pair: str) -> None:
        try:
            self._db.execute("DELETE FROM tracked_pairs WHERE pair = ?", (pair,))
            self._db.commit()
        except sqlite3.Error as e:
            raise PairStoreError(f"delete failed for {pair}: {e}") from e
        self._logger.debug("Deleted pair %s", pair)

    async def update_last_bought(self, pair: str, timestamp_ms: int | None = None) -> None:
        ts = _now_ms() if timestamp_ms is None else int(timestamp_ms)
        try:
            self._db.execute(
                "UPDATE tracked_pairs SET lastBoughtAt = ? WHERE pair = ?", (ts, pair)
            )
            self._db.commit()
        except sqlite3.Error as e:
            raise PairStoreError(f"update_last_bought failed for {pair}: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_all(self) -> list[TrackedPair]:
        try:
            rows = self._db.execute(f"SELECT {_COLUMNS} FROM tracked_pairs").fetchall()
        except sqlite3.Error as e:
            raise PairStoreError(f"get_all failed: {e}") from e
        return [TrackedPair.from_message(dict(row)) for row in rows]

    async def get_stale(self, cutoff_ms: int) -> list[TrackedPair]:
        """Pairs with no recorded buy since ``cutoff_ms`` (inclusive)."""
        try:
            rows = self._db.execute(
                f"""SELECT {_COLUMNS} FROM tracked_pairs
                    WHERE lastBoughtAt <= ?
                    ORDER BY lastBoughtAt ASC""",
                (int(cutoff_ms),),
            ).fetchall()
        except sqlite3.Error as e:
            raise PairStoreError(f"get_stale failed: {e}") from e
        return [TrackedPair.from_message(dict(row)) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        self._db.close()
