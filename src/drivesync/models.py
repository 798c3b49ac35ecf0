"""Data models for the drive index and the auth handshake."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


def now_ms() -> int:
    """Wall-clock milliseconds; used for file/note timestamps and the sync cursor."""
    return time.time_ns() // 1_000_000


def now_s() -> int:
    """Wall-clock seconds; used for token and challenge expiry."""
    return int(time.time())


class RecordState(enum.Enum):
    """Lifecycle of an indexed record. DELETED is a tombstone kept for sync."""

    ACTIVE = "active"
    DELETED = "deleted"

    @classmethod
    def from_flag(cls, is_deleted: int | bool) -> RecordState:
        return cls.DELETED if is_deleted else cls.ACTIVE


@dataclass
class FileRecord:
    """One row of the `files` table."""

    path: str
    hash: str
    size: int
    mtime: int
    created_at: int
    updated_at: int
    state: RecordState = RecordState.ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.state is RecordState.DELETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "hash": self.hash,
            "size": self.size,
            "mtime": self.mtime,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_deleted": self.is_deleted,
        }


@dataclass
class NoteRecord:
    """Index entry for a note; the body lives in the content store."""

    id: str
    path: str
    title: str
    hash: str
    created_at: int
    updated_at: int
    tags: list[str] = field(default_factory=list)
    state: RecordState = RecordState.ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.state is RecordState.DELETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "title": self.title,
            "tags": list(self.tags),
            "hash": self.hash,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_deleted": self.is_deleted,
        }


@dataclass
class TagInfo:
    name: str
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "count": self.count}


@dataclass
class Note:
    """A note as returned to clients: metadata plus the body."""

    id: str
    title: str
    content: str
    tags: list[str]
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class NoteListItem:
    id: str
    title: str
    tags: list[str]
    updated_at: int
    preview: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "tags": list(self.tags),
            "updated_at": self.updated_at,
            "preview": self.preview,
        }


@dataclass
class NoteList:
    total: int
    notes: list[NoteListItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "notes": [n.to_dict() for n in self.notes]}


@dataclass
class Challenge:
    challenge: str
    public_key: str
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge": self.challenge,
            "public_key": self.public_key,
            "expires_at": self.expires_at,
        }


@dataclass
class Token:
    token: str
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "expires_at": self.expires_at}


@dataclass
class SyncState:
    """Delta view handed to clients. `server_time` is the next `since` cursor."""

    server_time: int
    files: list[FileRecord] = field(default_factory=list)
    notes: list[NoteRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_time": self.server_time,
            "files": [f.to_dict() for f in self.files],
            "notes": [n.to_dict() for n in self.notes],
        }
