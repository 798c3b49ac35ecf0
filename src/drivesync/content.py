"""Sandboxed byte storage for file and note content.

ContentStore is the only code that touches content bytes:
    store = ContentStore("/srv/drive/files")
    store.write("a/b.txt", b"hi")
    store.read("a/b.txt")
    store.list_recursive()   # ["a/b.txt"]

All paths are relative POSIX strings. Anything absolute, or anything that
resolves outside the root (``..``, symlinks pointing out), is rejected with
ValidationError before the filesystem is touched.
"""

from __future__ import annotations

import os
import re
import threading
from pathlib import Path, PurePosixPath

from drivesync.errors import NotFoundError, StorageError, ValidationError

# In-flight write temp files: .<name>.tmp-<pid>-<thread>
_TMP_RE = re.compile(r"^\..+\.tmp-\d+-\d+$")


class ContentStore:
    """Read/write/list/remove files beneath a single root directory."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _resolve(self, rel: str) -> Path:
        pure = PurePosixPath(rel)
        if not rel or pure.is_absolute() or ".." in pure.parts:
            raise ValidationError(f"path escapes content root: {rel!r}")
        full = (self.root / pure).resolve()
        if full == self.root or not full.is_relative_to(self.root):
            raise ValidationError(f"path escapes content root: {rel!r}")
        return full

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def exists(self, rel: str) -> bool:
        return self._resolve(rel).is_file()

    def read(self, rel: str) -> bytes:
        path = self._resolve(rel)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"file not found: {rel}") from exc
        except OSError as exc:
            raise StorageError(f"failed to read {rel}: {exc}") from exc

    def read_text(self, rel: str) -> str:
        return self.read(rel).decode("utf-8", errors="replace")

    def size(self, rel: str) -> int:
        return self._stat(rel).st_size

    def mtime(self, rel: str) -> int:
        """Modification time in milliseconds."""
        return self._stat(rel).st_mtime_ns // 1_000_000

    def _stat(self, rel: str) -> os.stat_result:
        try:
            return self._resolve(rel).stat()
        except FileNotFoundError as exc:
            raise NotFoundError(f"file not found: {rel}") from exc
        except OSError as exc:
            raise StorageError(f"failed to stat {rel}: {exc}") from exc

    def list_recursive(self) -> list[str]:
        """All regular files under the root, as sorted relative POSIX paths."""
        try:
            return sorted(
                p.relative_to(self.root).as_posix()
                for p in self.root.rglob("*")
                if p.is_file() and not _TMP_RE.match(p.name)
            )
        except OSError as exc:
            raise StorageError(f"failed to list {self.root}: {exc}") from exc

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(self, rel: str, data: bytes | str) -> None:
        """Write data, creating parent directories.

        Goes through a sibling temp file and os.replace, so readers never see
        a half-written file.
        """
        path = self._resolve(rel)
        if isinstance(data, str):
            data = data.encode("utf-8")
        tmp = path.with_name(f".{path.name}.tmp-{os.getpid()}-{threading.get_ident()}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"failed to write {rel}: {exc}") from exc

    def set_mtime(self, rel: str, mtime_ms: int) -> None:
        path = self._resolve(rel)
        ns = mtime_ms * 1_000_000
        try:
            os.utime(path, ns=(ns, ns))
        except FileNotFoundError as exc:
            raise NotFoundError(f"file not found: {rel}") from exc
        except OSError as exc:
            raise StorageError(f"failed to set mtime on {rel}: {exc}") from exc

    def remove(self, rel: str) -> None:
        path = self._resolve(rel)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError(f"file not found: {rel}") from exc
        except OSError as exc:
            raise StorageError(f"failed to remove {rel}: {exc}") from exc
