"""SQLite index of files, notes, tags and auth state.

The index never holds content bytes, only hashes and sizes. It is rebuildable
from the content roots (see FileService.scan_and_index / NoteService.scan_and_index)
except for the auth tables.

Tables:
    files(path, hash, size, mtime, created_at, updated_at, is_deleted)
    notes(id, path, title, hash, created_at, updated_at, is_deleted)
    tags(id, name) + note_tags(note_id, tag_id)
    notes_fts  -- FTS5 over (title, content), one row per live note
    auth_tokens(token, created_at, expires_at, last_used)
    auth_challenges(challenge, public_key, expires_at)

Thread safety: one connection (check_same_thread=False) behind an RLock. Every
public method is one transaction; batch() groups several into one.

Sync ordering: updated_at of files and notes is assigned by the store inside the
write transaction, from the same strictly increasing counter that snapshot()
draws sync cursors from.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from typing import TYPE_CHECKING

from drivesync.db import get_conn
from drivesync.errors import StorageError, ValidationError
from drivesync.models import FileRecord, NoteRecord, RecordState, TagInfo, now_ms, now_s

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from pathlib import Path

logger = logging.getLogger("drivesync.metadata")

# SQLite's default limit on bound parameters is 32766; stay well below it.
_IN_CHUNK = 500

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS files (
        path        TEXT PRIMARY KEY,
        hash        TEXT NOT NULL,
        size        INTEGER NOT NULL,
        mtime       INTEGER NOT NULL,
        created_at  INTEGER NOT NULL,
        updated_at  INTEGER NOT NULL,
        is_deleted  INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS notes (
        id          TEXT PRIMARY KEY,
        path        TEXT NOT NULL UNIQUE,
        title       TEXT NOT NULL,
        hash        TEXT NOT NULL,
        created_at  INTEGER NOT NULL,
        updated_at  INTEGER NOT NULL,
        is_deleted  INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS tags (
        id      INTEGER PRIMARY KEY AUTOINCREMENT,
        name    TEXT NOT NULL UNIQUE
    );

    CREATE TABLE IF NOT EXISTS note_tags (
        note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
        tag_id  INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
        PRIMARY KEY (note_id, tag_id)
    );

    -- Self-contained FTS5 table: stores its own copy of title/content so a
    -- note row can be tombstoned without touching the search entry and vice versa.
    CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
        note_id UNINDEXED,
        title,
        content,
        tokenize='porter unicode61'
    );

    CREATE TABLE IF NOT EXISTS auth_tokens (
        token       TEXT PRIMARY KEY,
        created_at  INTEGER NOT NULL,
        expires_at  INTEGER NOT NULL,
        last_used   INTEGER
    );

    CREATE TABLE IF NOT EXISTS auth_challenges (
        challenge   TEXT PRIMARY KEY,
        public_key  TEXT NOT NULL,
        expires_at  INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_files_updated ON files(updated_at);
    CREATE INDEX IF NOT EXISTS idx_notes_updated ON notes(updated_at);
    CREATE INDEX IF NOT EXISTS idx_note_tags_tag ON note_tags(tag_id);
"""

_FILE_COLUMNS = "path, hash, size, mtime, created_at, updated_at, is_deleted"
_NOTE_COLUMNS = "n.id, n.path, n.title, n.hash, n.created_at, n.updated_at, n.is_deleted"


def _row_to_file(row: tuple) -> FileRecord:
    path, hash_, size, mtime, created_at, updated_at, is_deleted = row
    return FileRecord(
        path=path,
        hash=hash_,
        size=size,
        mtime=mtime,
        created_at=created_at,
        updated_at=updated_at,
        state=RecordState.from_flag(is_deleted),
    )


def _row_to_note(row: tuple) -> NoteRecord:
    note_id, path, title, hash_, created_at, updated_at, is_deleted = row
    return NoteRecord(
        id=note_id,
        path=path,
        title=title,
        hash=hash_,
        created_at=created_at,
        updated_at=updated_at,
        state=RecordState.from_flag(is_deleted),
    )


def _fts_query(text: str) -> str:
    """Turn free text into an FTS5 query: every term quoted, terms ANDed.

    Quoting keeps punctuation in user input ("foo-bar", "c++") from being read
    as FTS5 operators.
    """
    terms = text.split()
    if not terms:
        raise ValidationError("search query is empty")
    return " ".join('"' + t.replace('"', '""') + '"' for t in terms)


class MetadataStore:
    """Persistent, queryable index over the content roots."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self._last_stamp = 0
        self._conn = get_conn(db_path)
        try:
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            self._conn.close()
            raise StorageError(f"Failed to initialize schema in {db_path}: {exc}") from exc
        self._last_stamp = self._max_updated_at()
        logger.debug("schema ready: %s", db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _tx(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Run the body under the store lock inside one transaction.

        Nested calls join the outermost transaction. sqlite3 errors surface as
        StorageError; any error rolls the outermost transaction back.
        """
        with self._lock:
            outer = self._depth == 0
            try:
                if outer:
                    self._conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                if outer:
                    self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if outer:
                    self._rollback()
                raise StorageError(str(exc)) from exc
            except BaseException:
                if outer:
                    self._rollback()
                raise

    def _rollback(self) -> None:
        with contextlib.suppress(sqlite3.Error):  # no transaction may be open
            self._conn.execute("ROLLBACK")

    @contextlib.contextmanager
    def batch(self) -> Iterator[MetadataStore]:
        """Group several store calls into one write transaction."""
        with self._tx(write=True):
            yield self

    # ------------------------------------------------------------------
    # Sync stamps
    # ------------------------------------------------------------------

    def _max_updated_at(self) -> int:
        with self._tx() as conn:
            (latest,) = conn.execute(
                "SELECT MAX(m) FROM ("
                "SELECT MAX(updated_at) AS m FROM files "
                "UNION ALL SELECT MAX(updated_at) FROM notes)"
            ).fetchone()
        return latest or 0

    def _stamp(self) -> int:
        """Next updated_at / cursor value: wall-clock ms, strictly increasing.

        Called with the lock held. Every stamp is greater than every cursor
        already handed out, so a write can never hide behind a client's cursor.
        """
        self._last_stamp = max(now_ms(), self._last_stamp + 1)
        return self._last_stamp

    @contextlib.contextmanager
    def snapshot(self) -> Iterator[int]:
        """Hold one read transaction and yield a sync cursor for it.

        Writes stamp and commit under the same lock, so everything visible
        inside the snapshot is stamped below the cursor and everything
        committed later is stamped above it.
        """
        with self._tx():
            yield self._stamp()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def get_file(self, path: str) -> FileRecord | None:
        with self._tx() as conn:
            row = conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE path = ?", (path,)
            ).fetchone()
        return _row_to_file(row) if row else None

    def list_files(self, since: int | None = None) -> list[FileRecord]:
        sql = f"SELECT {_FILE_COLUMNS} FROM files"
        params: tuple = ()
        if since is not None:
            sql += " WHERE updated_at > ?"
            params = (since,)
        with self._tx() as conn:
            rows = conn.execute(sql + " ORDER BY path", params).fetchall()
        return [_row_to_file(r) for r in rows]

    def upsert_file(self, record: FileRecord) -> None:
        """Insert or replace by path. created_at of an existing row is kept.

        record.updated_at is set here, inside the write transaction.
        """
        with self._tx(write=True) as conn:
            record.updated_at = self._stamp()
            conn.execute(
                f"INSERT INTO files ({_FILE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(path) DO UPDATE SET "
                "hash = excluded.hash, size = excluded.size, mtime = excluded.mtime, "
                "updated_at = excluded.updated_at, is_deleted = excluded.is_deleted",
                (
                    record.path,
                    record.hash,
                    record.size,
                    record.mtime,
                    record.created_at,
                    record.updated_at,
                    int(record.is_deleted),
                ),
            )

    def mark_deleted(self, path: str) -> bool:
        """Tombstone a file. Returns False if the path was never indexed."""
        with self._tx(write=True) as conn:
            cur = conn.execute(
                "UPDATE files SET is_deleted = 1, updated_at = ? WHERE path = ?",
                (self._stamp(), path),
            )
        return cur.rowcount > 0

    def remove_file(self, path: str) -> None:
        """Purge a file row entirely. Deletion will no longer reach clients."""
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM files WHERE path = ?", (path,))

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def _attach_tags(self, conn: sqlite3.Connection, notes: list[NoteRecord]) -> list[NoteRecord]:
        by_id = {n.id: n for n in notes}
        ids = list(by_id)
        for i in range(0, len(ids), _IN_CHUNK):
            chunk = ids[i : i + _IN_CHUNK]
            marks = ",".join("?" * len(chunk))
            rows = conn.execute(
                "SELECT nt.note_id, t.name FROM note_tags nt "
                f"JOIN tags t ON t.id = nt.tag_id WHERE nt.note_id IN ({marks}) "
                "ORDER BY t.name",
                chunk,
            ).fetchall()
            for note_id, name in rows:
                by_id[note_id].tags.append(name)
        return notes

    def _select_notes(self, where: str, params: tuple, order: str = "") -> list[NoteRecord]:
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_NOTE_COLUMNS} FROM notes n {where} {order}", params
            ).fetchall()
            return self._attach_tags(conn, [_row_to_note(r) for r in rows])

    def get_note(self, note_id: str) -> NoteRecord | None:
        notes = self._select_notes("WHERE n.id = ?", (note_id,))
        return notes[0] if notes else None

    def get_note_by_path(self, path: str) -> NoteRecord | None:
        notes = self._select_notes("WHERE n.path = ?", (path,))
        return notes[0] if notes else None

    def get_all_notes(self) -> list[NoteRecord]:
        return self._select_notes("WHERE n.is_deleted = 0", (), "ORDER BY n.updated_at DESC")

    def get_notes_by_tag(self, tag: str) -> list[NoteRecord]:
        return self._select_notes(
            "WHERE n.is_deleted = 0 AND n.id IN ("
            "SELECT nt.note_id FROM note_tags nt JOIN tags t ON t.id = nt.tag_id WHERE t.name = ?)",
            (tag,),
            "ORDER BY n.updated_at DESC",
        )

    def list_notes(self, since: int | None = None) -> list[NoteRecord]:
        """Every note record, tombstones included (the sync view)."""
        if since is None:
            return self._select_notes("", (), "ORDER BY n.id")
        return self._select_notes("WHERE n.updated_at > ?", (since,), "ORDER BY n.id")

    def search_notes(self, query: str) -> list[NoteRecord]:
        """Full-text search over title + body, best match first."""
        match = _fts_query(query)
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_NOTE_COLUMNS} FROM "
                "(SELECT note_id, rank FROM notes_fts WHERE notes_fts MATCH ?) f "
                "JOIN notes n ON n.id = f.note_id "
                "WHERE n.is_deleted = 0 "
                "ORDER BY f.rank",
                (match,),
            ).fetchall()
            return self._attach_tags(conn, [_row_to_note(r) for r in rows])

    def upsert_note(self, record: NoteRecord) -> None:
        """Insert or replace by id, and replace the note's tag set.

        record.updated_at is set here, inside the write transaction.
        """
        with self._tx(write=True) as conn:
            record.updated_at = self._stamp()
            conn.execute(
                "INSERT INTO notes (id, path, title, hash, created_at, updated_at, is_deleted) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "path = excluded.path, title = excluded.title, hash = excluded.hash, "
                "updated_at = excluded.updated_at, is_deleted = excluded.is_deleted",
                (
                    record.id,
                    record.path,
                    record.title,
                    record.hash,
                    record.created_at,
                    record.updated_at,
                    int(record.is_deleted),
                ),
            )
            self.set_note_tags(record.id, record.tags)

    def set_note_tags(self, note_id: str, tags: Iterable[str]) -> None:
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM note_tags WHERE note_id = ?", (note_id,))
            for tag in tags:
                conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (tag,))
                (tag_id,) = conn.execute("SELECT id FROM tags WHERE name = ?", (tag,)).fetchone()
                conn.execute(
                    "INSERT OR IGNORE INTO note_tags (note_id, tag_id) VALUES (?, ?)",
                    (note_id, tag_id),
                )

    def delete_note(self, note_id: str) -> bool:
        """Tombstone a note and drop its search entry. Tag links are left in place."""
        with self._tx(write=True) as conn:
            cur = conn.execute(
                "UPDATE notes SET is_deleted = 1, updated_at = ? WHERE id = ?",
                (self._stamp(), note_id),
            )
            self.remove_fts(note_id)
        return cur.rowcount > 0

    def get_all_tags(self) -> list[TagInfo]:
        # Inner join on live notes: links left behind by delete_note do not count.
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT t.name, COUNT(n.id) AS cnt FROM tags t "
                "JOIN note_tags nt ON nt.tag_id = t.id "
                "JOIN notes n ON n.id = nt.note_id AND n.is_deleted = 0 "
                "GROUP BY t.id HAVING cnt > 0 "
                "ORDER BY cnt DESC, t.name"
            ).fetchall()
        return [TagInfo(name=name, count=count) for name, count in rows]

    # ------------------------------------------------------------------
    # Full-text search entries
    # ------------------------------------------------------------------

    def update_fts(self, note_id: str, title: str, body: str) -> None:
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM notes_fts WHERE note_id = ?", (note_id,))
            conn.execute(
                "INSERT INTO notes_fts (note_id, title, content) VALUES (?, ?, ?)",
                (note_id, title, body),
            )

    def remove_fts(self, note_id: str) -> None:
        with self._tx(write=True) as conn:
            conn.execute("DELETE FROM notes_fts WHERE note_id = ?", (note_id,))

    # ------------------------------------------------------------------
    # Auth tokens / challenges
    # ------------------------------------------------------------------

    def store_token(self, token: str, expires_at: int) -> None:
        with self._tx(write=True) as conn:
            conn.execute(
                "INSERT INTO auth_tokens (token, created_at, expires_at) VALUES (?, ?, ?)",
                (token, now_s(), expires_at),
            )

    def validate_token(self, token: str) -> bool:
        """True iff the token exists and has not expired; refreshes last_used."""
        now = now_s()
        with self._tx(write=True) as conn:
            cur = conn.execute(
                "UPDATE auth_tokens SET last_used = ? WHERE token = ? AND expires_at > ?",
                (now, token, now),
            )
        return cur.rowcount > 0

    def cleanup_expired_tokens(self) -> int:
        with self._tx(write=True) as conn:
            cur = conn.execute("DELETE FROM auth_tokens WHERE expires_at <= ?", (now_s(),))
        return cur.rowcount

    def store_challenge(self, challenge: str, public_key: str, expires_at: int) -> None:
        with self._tx(write=True) as conn:
            conn.execute(
                "INSERT INTO auth_challenges (challenge, public_key, expires_at) VALUES (?, ?, ?)",
                (challenge, public_key, expires_at),
            )

    def validate_challenge(self, challenge: str, public_key: str) -> bool:
        """Look up and consume a challenge in one statement.

        A matching, unexpired row is deleted whether or not the caller's later
        signature check succeeds, so each challenge is usable at most once.
        """
        with self._tx(write=True) as conn:
            cur = conn.execute(
                "DELETE FROM auth_challenges "
                "WHERE challenge = ? AND public_key = ? AND expires_at > ?",
                (challenge, public_key, now_s()),
            )
        return cur.rowcount > 0

    def cleanup_expired_challenges(self) -> int:
        with self._tx(write=True) as conn:
            cur = conn.execute("DELETE FROM auth_challenges WHERE expires_at <= ?", (now_s(),))
        return cur.rowcount
