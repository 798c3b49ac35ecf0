"""drivesync: personal drive backend with delta sync and SSH-key auth.

Layout (under the data dir, see drivesync.config):
    files/              # generic file content (source of truth)
    notes/
        <id>.md         # note body with title/tags front matter
    drivesync.db        # SQLite: file and note records, tags, FTS5, tokens, challenges
    authorized_keys     # OpenSSH public keys allowed to log in

Records are never hard-deleted by the API; deletions become tombstones with a
fresh updated_at so that GET /api/v1/sync/state?since=<cursor> reports them.
"""

from drivesync.config import DriveConfig, init_config, load_config
from drivesync.metadata import MetadataStore
from drivesync.server import Drive, DriveServer

__all__ = ["Drive", "DriveConfig", "DriveServer", "MetadataStore", "init_config", "load_config"]
