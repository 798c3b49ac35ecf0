"""NoteService: markdown notes stored as <id>.md with front matter.

Every create/update writes the file first, then refreshes the note row, its
tag links and its search entry inside one MetadataStore.batch() transaction,
so the index never shows a note body with stale tags or a stale search entry.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from drivesync.errors import DriveError, NotFoundError, ValidationError
from drivesync.files import content_hash
from drivesync.models import Note, NoteList, NoteListItem, NoteRecord, RecordState, now_ms
from drivesync.notefile import ParsedNote, generate_preview, normalize_tags, parse_note, serialize_note

if TYPE_CHECKING:
    from collections.abc import Sequence

    from drivesync.content import ContentStore
    from drivesync.metadata import MetadataStore
    from drivesync.models import TagInfo

logger = logging.getLogger("drivesync.notes")

NOTE_SUFFIX = ".md"
DEFAULT_LIMIT = 50


def note_path(note_id: str) -> str:
    return note_id + NOTE_SUFFIX


def _clean_title(title: str | None) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required")
    return " ".join(title.split())


class NoteService:
    def __init__(self, content: ContentStore, store: MetadataStore) -> None:
        self._content = content
        self._store = store

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _live_record(self, note_id: str) -> NoteRecord:
        record = self._store.get_note(note_id)
        if record is None or record.is_deleted:
            raise NotFoundError(f"note not found: {note_id}")
        return record

    def get_note(self, note_id: str) -> Note:
        record = self._live_record(note_id)
        parsed = parse_note(self._content.read_text(record.path), default_title=record.title)
        return Note(
            id=record.id,
            title=record.title,
            content=parsed.content,
            tags=list(record.tags),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def get_metadata(self, note_id: str) -> NoteRecord | None:
        return self._store.get_note(note_id)

    def get_all_metadata(self) -> list[NoteRecord]:
        return self._store.get_all_notes()

    def list_notes(
        self,
        *,
        tag: str | None = None,
        search: str | None = None,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> NoteList:
        """List live notes, newest first (or best match first when searching)."""
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative")
        if search is not None:
            records = self._store.search_notes(search)
        elif tag is not None:
            records = self._store.get_notes_by_tag(tag)
        else:
            records = self._store.get_all_notes()

        page = records[offset : offset + limit]
        items = []
        for record in page:
            try:
                body = parse_note(self._content.read_text(record.path)).content
            except DriveError as exc:
                logger.warning("failed to read note %s for preview: %s", record.id, exc)
                body = ""
            items.append(
                NoteListItem(
                    id=record.id,
                    title=record.title,
                    tags=list(record.tags),
                    updated_at=record.updated_at,
                    preview=generate_preview(body),
                )
            )
        return NoteList(total=len(records), notes=items)

    def get_tags(self) -> list[TagInfo]:
        return self._store.get_all_tags()

    def get_notes_by_tag(self, tag: str) -> NoteList:
        return self.list_notes(tag=tag)

    def search_notes(self, query: str) -> NoteList:
        return self.list_notes(search=query)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def create_note(self, title: str, content: str = "", tags: Sequence[str] = ()) -> Note:
        title = _clean_title(title)
        tag_list = normalize_tags(list(tags))
        note_id = str(uuid.uuid4())
        path = note_path(note_id)

        text = serialize_note(ParsedNote(title=title, content=content, tags=tag_list))
        self._content.write(path, text)

        now = now_ms()
        record = NoteRecord(
            id=note_id,
            path=path,
            title=title,
            hash=content_hash(text.encode("utf-8")),
            created_at=now,
            updated_at=now,
            tags=tag_list,
        )
        self._index(record, content)
        logger.debug("created note: %s (%s)", note_id, title)
        return Note(note_id, title, content, tag_list, record.created_at, record.updated_at)

    def update_note(
        self,
        note_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        tags: Sequence[str] | None = None,
    ) -> Note:
        """Apply a partial update. Given tags replace the old set entirely."""
        existing = self._live_record(note_id)
        current = parse_note(self._content.read_text(existing.path), default_title=existing.title)

        new_title = existing.title if title is None else _clean_title(title)
        new_tags = list(existing.tags) if tags is None else normalize_tags(list(tags))
        new_content = current.content if content is None else content

        text = serialize_note(ParsedNote(title=new_title, content=new_content, tags=new_tags))
        self._content.write(existing.path, text)

        now = now_ms()
        record = NoteRecord(
            id=existing.id,
            path=existing.path,
            title=new_title,
            hash=content_hash(text.encode("utf-8")),
            created_at=existing.created_at,
            updated_at=now,
            tags=new_tags,
        )
        self._index(record, new_content)
        logger.debug("updated note: %s (%s)", note_id, new_title)
        return Note(existing.id, new_title, new_content, new_tags, record.created_at, record.updated_at)

    def delete_note(self, note_id: str) -> None:
        record = self._live_record(note_id)
        try:
            self._content.remove(record.path)
        except DriveError as exc:
            logger.warning("failed to remove note content %s: %s", record.path, exc)
        self._store.delete_note(note_id)
        logger.debug("deleted note: %s", note_id)

    def _index(self, record: NoteRecord, body: str) -> None:
        try:
            with self._store.batch():
                self._store.upsert_note(record)
                self._store.update_fts(record.id, record.title, body)
        except DriveError:
            logger.exception("note written but index update failed: %s", record.id)
            raise

    # ------------------------------------------------------------------
    # Repair / bootstrap
    # ------------------------------------------------------------------

    def scan_and_index(self) -> dict[str, int]:
        """Re-index every *.md file under the notes root.

        The note id is the relative path without ".md". Notes whose file hash
        is unchanged and which are live in the index are skipped.

        Returns stats: new, updated, unchanged, skipped.
        """
        stats = {"new": 0, "updated": 0, "unchanged": 0, "skipped": 0}
        for path in self._content.list_recursive():
            if not path.endswith(NOTE_SUFFIX):
                continue
            note_id = path[: -len(NOTE_SUFFIX)]
            try:
                data = self._content.read(path)
                parsed = parse_note(
                    data.decode("utf-8", errors="replace"),
                    default_title=note_id.rsplit("/", 1)[-1],
                )
            except DriveError as exc:
                logger.warning("failed to read note %s: %s", path, exc)
                stats["skipped"] += 1
                continue

            digest = content_hash(data)
            existing = self._store.get_note(note_id)
            if existing is not None and not existing.is_deleted and existing.hash == digest:
                stats["unchanged"] += 1
                continue

            now = now_ms()
            record = NoteRecord(
                id=note_id,
                path=path,
                title=parsed.title,
                hash=digest,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
                tags=parsed.tags,
                state=RecordState.ACTIVE,
            )
            try:
                self._index(record, parsed.content)
            except DriveError:
                stats["skipped"] += 1
                continue
            stats["updated" if existing is not None else "new"] += 1

        logger.info(
            "indexed notes: %d new, %d updated, %d unchanged, %d skipped",
            stats["new"], stats["updated"], stats["unchanged"], stats["skipped"],
        )
        return stats
