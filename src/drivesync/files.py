"""FileService: keeps the content store and the files index in agreement.

Writes go content-first, index-second. A failed content write leaves the
index untouched; a failed index write after a good content write leaves the
two diverged until the next scan_and_index().
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

from drivesync.errors import DriveError, NotFoundError
from drivesync.models import FileRecord, RecordState, now_ms

if TYPE_CHECKING:
    from drivesync.content import ContentStore
    from drivesync.metadata import MetadataStore

logger = logging.getLogger("drivesync.files")


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FileService:
    def __init__(self, content: ContentStore, store: MetadataStore) -> None:
        self._content = content
        self._store = store

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_file(self, path: str) -> bytes:
        """Return file bytes. Tombstoned or unindexed paths are not found."""
        record = self._store.get_file(path)
        if record is None or record.is_deleted:
            raise NotFoundError(f"file not found: {path}")
        return self._content.read(path)

    def get_metadata(self, path: str) -> FileRecord | None:
        return self._store.get_file(path)

    def list_files(self) -> list[FileRecord]:
        return self._store.list_files()

    def get_changed_since(self, since: int) -> list[FileRecord]:
        return self._store.list_files(since)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put_file(self, path: str, data: bytes, client_mtime: int | None = None) -> FileRecord:
        existing = self._store.get_file(path)
        self._content.write(path, data)
        if client_mtime is not None:
            self._content.set_mtime(path, client_mtime)

        record = self._build_record(path, data)
        if existing is not None:
            record.created_at = existing.created_at
        if client_mtime is not None:
            record.mtime = client_mtime
        try:
            self._store.upsert_file(record)
        except DriveError:
            logger.exception("content written but index update failed: %s", path)
            raise
        logger.debug("stored file: %s (%d bytes)", path, record.size)
        return record

    def delete_file(self, path: str) -> None:
        """Best-effort content removal, then a mandatory tombstone."""
        record = self._store.get_file(path)
        if record is None:
            raise NotFoundError(f"file not found: {path}")
        try:
            self._content.remove(path)
        except DriveError as exc:
            logger.warning("failed to remove file content %s: %s", path, exc)
        self._store.mark_deleted(path)
        logger.debug("deleted file: %s", path)

    # ------------------------------------------------------------------
    # Repair / bootstrap
    # ------------------------------------------------------------------

    def scan_and_index(self) -> dict[str, int]:
        """Re-index every file under the content root.

        Live records whose hash still matches are left alone so a restart does
        not move their updated_at (and with it every client's next delta).
        Index rows whose content has vanished are not touched.

        Returns stats: new, updated, unchanged, skipped.
        """
        stats = {"new": 0, "updated": 0, "unchanged": 0, "skipped": 0}
        for path in self._content.list_recursive():
            try:
                data = self._content.read(path)
            except DriveError as exc:
                logger.warning("failed to read file for indexing %s: %s", path, exc)
                stats["skipped"] += 1
                continue

            existing = self._store.get_file(path)
            record = self._build_record(path, data)
            if existing is not None and not existing.is_deleted and existing.hash == record.hash:
                stats["unchanged"] += 1
                continue
            if existing is not None:
                record.created_at = existing.created_at

            try:
                self._store.upsert_file(record)
            except DriveError as exc:
                logger.warning("failed to store metadata for %s: %s", path, exc)
                stats["skipped"] += 1
                continue
            stats["updated" if existing is not None else "new"] += 1

        logger.info(
            "indexed files: %d new, %d updated, %d unchanged, %d skipped",
            stats["new"], stats["updated"], stats["unchanged"], stats["skipped"],
        )
        return stats

    def _build_record(self, path: str, data: bytes) -> FileRecord:
        now = now_ms()
        try:
            mtime = self._content.mtime(path)
        except DriveError:
            mtime = now
        return FileRecord(
            path=path,
            hash=content_hash(data),
            size=len(data),
            mtime=mtime,
            created_at=now,
            updated_at=now,  # restamped by the store on upsert
            state=RecordState.ACTIVE,
        )
