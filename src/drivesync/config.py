"""DriveConfig: server configuration loaded from drivesync.toml.

Lookup order for load_config(None):

    $DRIVESYNC_HOME/drivesync.toml   (DRIVESYNC_HOME defaults to ~/.drivesync)
    /etc/drivesync/drivesync.toml
    built-in defaults

Default layout (under the data dir):

    drivesync.toml
    authorized_keys       # OpenSSH format, one key per line
    drivesync.db          # SQLite index (rebuildable except auth state)
    files/                # generic file content
    notes/                # <id>.md notes with front matter

drivesync.toml example:

    [server]
    host = "127.0.0.1"
    port = 8080
    multithreaded = true

    [storage]
    files_root = "files"          # relative paths resolve against this file's dir
    notes_root = "notes"
    database = "drivesync.db"

    [auth]
    authorized_keys = "authorized_keys"
    token_expiry = 86400          # seconds
    challenge_expiry = 300        # seconds
    cleanup_interval = 3600       # seconds between expiry sweeps

    [logging]
    level = "info"                # debug | info | warning | error
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from drivesync.errors import ValidationError

logger = logging.getLogger("drivesync.config")

CONFIG_FILENAME = "drivesync.toml"
_SYSTEM_CONFIG = Path("/etc/drivesync") / CONFIG_FILENAME
_HOME_ENV = "DRIVESYNC_HOME"


def data_dir() -> Path:
    """Return the data directory ($DRIVESYNC_HOME or ~/.drivesync)."""
    env = os.environ.get(_HOME_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".drivesync"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    multithreaded: bool = True


@dataclass
class StorageConfig:
    files_root: Path = field(default_factory=lambda: data_dir() / "files")
    notes_root: Path = field(default_factory=lambda: data_dir() / "notes")
    database: Path = field(default_factory=lambda: data_dir() / "drivesync.db")


@dataclass
class AuthConfig:
    authorized_keys: Path = field(default_factory=lambda: data_dir() / "authorized_keys")
    token_expiry: int = 86400      # seconds
    challenge_expiry: int = 300    # seconds
    cleanup_interval: int = 3600   # seconds between expiry sweeps


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class DriveConfig:
    """Resolved configuration for one server instance."""

    path: Path | None = None       # file it was loaded from, None for defaults
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def log_level(self) -> int:
        return logging.getLevelNamesMapping().get(self.logging.level.upper(), logging.INFO)

    def ensure_dirs(self) -> None:
        """Create content roots and the database directory; touch authorized_keys."""
        self.storage.files_root.mkdir(parents=True, exist_ok=True)
        self.storage.notes_root.mkdir(parents=True, exist_ok=True)
        self.storage.database.parent.mkdir(parents=True, exist_ok=True)
        keys = self.auth.authorized_keys
        if not keys.exists():
            try:
                keys.parent.mkdir(parents=True, exist_ok=True)
                keys.touch()
            except OSError as exc:
                logger.warning("could not create %s: %s", keys, exc)


def _path(value: Any, base: Path, default: Path) -> Path:
    if value is None:
        return default
    p = Path(str(value)).expanduser()
    return p if p.is_absolute() else base / p


def _int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer, got {value!r}")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    value = _int(section, key, default)
    if value <= 0:
        raise ValidationError(f"{key} must be positive, got {value!r}")
    return value


def load_config(path: Path | str | None = None) -> DriveConfig:
    """Load drivesync.toml from path, or from the default locations."""
    if path is None:
        for candidate in (data_dir() / CONFIG_FILENAME, _SYSTEM_CONFIG):
            if candidate.exists():
                path = candidate
                break
        else:
            logger.info("no config file found, using defaults")
            return DriveConfig()

    config_path = Path(path).expanduser()
    try:
        with config_path.open("rb") as f:
            raw: dict[str, Any] = tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"failed to parse {config_path}: {exc}") from exc
    except OSError as exc:
        raise ValidationError(f"cannot read {config_path}: {exc}") from exc
    logger.info("loading config from %s", config_path)

    base = config_path.parent.resolve()
    srv = raw.get("server", {})
    sto = raw.get("storage", {})
    auth = raw.get("auth", {})
    log = raw.get("logging", {})
    defaults = DriveConfig()

    return DriveConfig(
        path=config_path,
        server=ServerConfig(
            host=str(srv.get("host", defaults.server.host)),
            port=_int(srv, "port", defaults.server.port),
            multithreaded=bool(srv.get("multithreaded", defaults.server.multithreaded)),
        ),
        storage=StorageConfig(
            files_root=_path(sto.get("files_root"), base, defaults.storage.files_root),
            notes_root=_path(sto.get("notes_root"), base, defaults.storage.notes_root),
            database=_path(sto.get("database"), base, defaults.storage.database),
        ),
        auth=AuthConfig(
            authorized_keys=_path(auth.get("authorized_keys"), base, defaults.auth.authorized_keys),
            token_expiry=_int(auth, "token_expiry", defaults.auth.token_expiry),
            challenge_expiry=_int(auth, "challenge_expiry", defaults.auth.challenge_expiry),
            cleanup_interval=_positive_int(auth, "cleanup_interval", defaults.auth.cleanup_interval),
        ),
        logging=LoggingConfig(level=str(log.get("level", defaults.logging.level))),
    )


def init_config(path: Path) -> Path:
    """Write a default drivesync.toml at path. Raises if it already exists."""
    if path.exists():
        msg = f"{CONFIG_FILENAME} already exists at {path}"
        raise FileExistsError(msg)

    content = """\
[server]
host = "127.0.0.1"
port = 8080
multithreaded = true

[storage]
# Relative paths resolve against the directory of this file.
files_root = "files"
notes_root = "notes"
database = "drivesync.db"

[auth]
authorized_keys = "authorized_keys"   # OpenSSH format
token_expiry = 86400                  # seconds
challenge_expiry = 300                # seconds
cleanup_interval = 3600               # seconds between expiry sweeps

[logging]
level = "info"
"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path
