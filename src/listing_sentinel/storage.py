# src/listing_sentinel/storage.py
from __future__ import annotations

import os
import pathlib
import sqlite3

from .errors import StoreInitError
from .logging_utils import get_logger

log = get_logger("storage")


def _ensure_dir(p: str):
    if p == ":memory:":
        return
    pathlib.Path(os.path.dirname(p) or ".").mkdir(parents=True, exist_ok=True)


def init_optimized_connection(db_path: str, timeout: int = 30) -> sqlite3.Connection:
    """
    Open a SQLite connection tuned for a single-writer pipeline.

    The connection runs in autocommit mode (``isolation_level=None``) so every
    statement is its own implicit transaction; callers never open nested
    transactions on it.

    Parameters
    ----------
    db_path : str
        Path to SQLite database file (``:memory:`` allowed)
    timeout : int, optional
        Busy timeout in seconds (default: 30)

    Environment Variables
    --------------------
    SQLITE_WAL_MODE : str
        Enable Write-Ahead Logging (1=on, 0=off, default: 1)
    SQLITE_SYNCHRONOUS : str
        Synchronous mode (FULL, NORMAL, OFF; default: NORMAL)
    SQLITE_CACHE_SIZE : str
        Cache size in pages (default: 10000)
    """
    _ensure_dir(db_path)
    conn = sqlite3.connect(
        db_path, timeout=timeout, isolation_level=None, check_same_thread=False
    )

    if os.getenv("SQLITE_WAL_MODE", "1") == "1" and db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA wal_autocheckpoint=500")

    synchronous_mode = os.getenv("SQLITE_SYNCHRONOUS", "NORMAL")
    conn.execute(f"PRAGMA synchronous={synchronous_mode}")

    cache_size = int(os.getenv("SQLITE_CACHE_SIZE", "10000"))
    conn.execute(f"PRAGMA cache_size={cache_size}")

    conn.execute("PRAGMA temp_store=MEMORY")
    return conn


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS watermarks (
      source TEXT PRIMARY KEY,
      last_published_at INTEGER NOT NULL,
      last_item_id TEXT NOT NULL,
      updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_events (
      event_id TEXT PRIMARY KEY,
      source TEXT NOT NULL,
      base TEXT NOT NULL,
      url TEXT,
      markets TEXT,
      trade_time_utc TEXT,
      raw_title TEXT,
      created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_bases (
      base TEXT PRIMARY KEY,
      last_acted_at TEXT NOT NULL,
      last_event_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_processed_events_created_at "
    "ON processed_events(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_processed_events_base "
    "ON processed_events(base)",
)


def migrate(conn: sqlite3.Connection) -> None:
    """Create the pipeline tables and indexes if missing.

    Idempotent: safe to run on every boot.  Any failure is fatal for the
    caller and surfaces as ``StoreInitError``.
    """
    try:
        for stmt in _SCHEMA:
            conn.execute(stmt)
    except sqlite3.Error as e:
        log.error("schema_migration_failed err=%s", str(e), exc_info=True)
        raise StoreInitError(f"schema migration failed: {e}") from e


def open_store(db_path: str, timeout: int = 30) -> sqlite3.Connection:
    """Open and migrate the database; raises StoreInitError on failure."""
    try:
        conn = init_optimized_connection(db_path, timeout=timeout)
    except (sqlite3.Error, OSError) as e:
        log.error("store_open_failed path=%s err=%s", db_path, str(e), exc_info=True)
        raise StoreInitError(f"cannot open {db_path}: {e}") from e
    migrate(conn)
    log.info("store_initialized path=%s", db_path)
    return conn
