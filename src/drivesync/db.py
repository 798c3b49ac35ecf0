"""DB connection: a single local SQLite file shared by all request threads."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from drivesync.errors import StorageError

if TYPE_CHECKING:
    from pathlib import Path


def get_conn(db_path: Path) -> sqlite3.Connection:
    """Open the index database at db_path.

    The connection is in autocommit mode (transactions are opened explicitly by
    MetadataStore), uses WAL journaling and foreign key enforcement, and may be
    used from any thread; callers serialize access themselves.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # A 0-byte file is what a crashed WAL checkpoint on some network filesystems
    # leaves behind; report it plainly instead of an opaque "disk I/O error".
    if db_path.exists() and db_path.stat().st_size == 0:
        msg = (
            f"SQLite DB is empty (0 bytes): {db_path}\n"
            f"Fix: rm {db_path}* && drivesync reindex"
        )
        raise StorageError(msg)
    try:
        conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    except sqlite3.Error as exc:
        raise StorageError(f"Failed to open database {db_path}: {exc}") from exc
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.Error as exc:
        conn.close()
        raise StorageError(
            f"Failed to open database {db_path}, it may be corrupt.\n"
            f"Original error: {exc}"
        ) from exc
    return conn
