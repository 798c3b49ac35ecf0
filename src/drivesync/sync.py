"""Delta sync: what changed in the index since a client's last cursor.

Clients keep the `server_time` of their previous response and pass it back as
`since`. Their own clock is never used as a cursor. Tombstones are included so
deletions reach every client.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from drivesync.models import SyncState

if TYPE_CHECKING:
    from drivesync.metadata import MetadataStore


class SyncService:
    def __init__(self, store: MetadataStore) -> None:
        self._store = store

    def get_sync_state(self, since: int | None = None) -> SyncState:
        """Full snapshot if since is None, else records with updated_at > since.

        The cursor and both listings come from one read transaction, and any
        write committed afterwards is stamped above the cursor.
        """
        with self._store.snapshot() as server_time:
            return SyncState(
                server_time=server_time,
                files=self._store.list_files(since),
                notes=self._store.list_notes(since),
            )
