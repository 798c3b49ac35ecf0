"""HTTP API over the drive services.

All routes except /api/v1/auth/* need `Authorization: Bearer <token>`.

    POST   /api/v1/auth/challenge        {"public_key"}                  -> challenge
    POST   /api/v1/auth/verify           {"challenge","public_key","signature"} -> token
    GET    /api/v1/sync/state[?since=ms] -> {"server_time","files","notes"}
    GET    /api/v1/files                 -> [file record]
    GET    /api/v1/files/<path>          -> raw bytes
    PUT    /api/v1/files/<path>          body = bytes, optional X-File-Mtime (ms)
    DELETE /api/v1/files/<path>
    GET    /api/v1/notes[?tag=&q=&limit=&offset=]
    GET    /api/v1/notes/tags
    GET    /api/v1/notes/search?q=
    GET    /api/v1/notes/<id>
    POST   /api/v1/notes                 {"title","content","tags"}
    PUT    /api/v1/notes/<id>            any of {"title","content","tags"}
    DELETE /api/v1/notes/<id>

Errors come back as {"error": <code>, "message": <text>}.
"""

from __future__ import annotations

import json
import logging
import signal
import socketserver
import threading
import time
import urllib.parse
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import TYPE_CHECKING, Any

from drivesync.auth import AuthManager
from drivesync.content import ContentStore
from drivesync.errors import AuthError, DriveError, NotFoundError, StorageError, ValidationError
from drivesync.files import FileService
from drivesync.metadata import MetadataStore
from drivesync.notes import DEFAULT_LIMIT, NoteService
from drivesync.sync import SyncService

if TYPE_CHECKING:
    from drivesync.config import DriveConfig

logger = logging.getLogger("drivesync.server")

_API = "/api/v1"
_FILES = f"{_API}/files"
_NOTES = f"{_API}/notes"
_TICK = 1.0  # seconds between checks for a requested key reload


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class Drive:
    """One server instance's store and services."""

    store: MetadataStore
    files: FileService
    notes: NoteService
    sync: SyncService
    auth: AuthManager

    @classmethod
    def open(cls, cfg: DriveConfig) -> Drive:
        """Create directories, open the index and build the services.

        Raises StorageError if the database cannot be opened or initialized.
        """
        cfg.ensure_dirs()
        store = MetadataStore(cfg.storage.database)
        return cls(
            store=store,
            files=FileService(ContentStore(cfg.storage.files_root), store),
            notes=NoteService(ContentStore(cfg.storage.notes_root), store),
            sync=SyncService(store),
            auth=AuthManager(store, cfg.auth),
        )

    def load_keys(self) -> None:
        """Load authorized keys; a failure is logged and the old set kept."""
        try:
            self.auth.load_authorized_keys()
        except DriveError as exc:
            logger.warning("failed to load authorized keys: %s", exc)

    def scan(self) -> dict[str, dict[str, int]]:
        return {"files": self.files.scan_and_index(), "notes": self.notes.scan_and_index()}

    def sweep(self) -> None:
        self.auth.cleanup_expired()
        self.auth.cleanup_expired_challenges()

    def close(self) -> None:
        self.store.close()


class _Sweeper(threading.Thread):
    """Periodically deletes expired tokens and challenges.

    Also performs key reloads requested by SIGHUP. The signal handler only sets
    reload_requested; it never takes a lock itself.
    """

    def __init__(self, drive: Drive, interval: float) -> None:
        super().__init__(name="drivesync-sweeper", daemon=True)
        self._drive = drive
        self._interval = interval
        self._halt = threading.Event()
        self.reload_requested = False

    def run(self) -> None:
        next_sweep = time.monotonic() + self._interval
        while not self._halt.wait(_TICK):
            if self.reload_requested:
                self.reload_requested = False
                self._drive.load_keys()
            if time.monotonic() >= next_sweep:
                next_sweep = time.monotonic() + self._interval
                try:
                    self._drive.sweep()
                except Exception:
                    logger.exception("expiry sweep failed")

    def stop(self) -> None:
        self._halt.set()


# ---------------------------------------------------------------------------
# Request handling
# ---------------------------------------------------------------------------


def _status_for(exc: DriveError) -> int:
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    return 500


def _int_param(qs: dict[str, list[str]], name: str, default: int | None) -> int | None:
    values = qs.get(name)
    if not values or values[0] == "":
        return default
    try:
        return int(values[0])
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


class _Handler(BaseHTTPRequestHandler):
    drive: Drive  # injected via make_handler()

    def do_GET(self) -> None:
        self._dispatch(self._get)

    def do_POST(self) -> None:
        self._dispatch(self._post)

    def do_PUT(self) -> None:
        self._dispatch(self._put)

    def do_DELETE(self) -> None:
        self._dispatch(self._delete)

    def _dispatch(self, route: Any) -> None:
        parsed = urllib.parse.urlparse(self.path)
        path = urllib.parse.unquote(parsed.path)
        qs = urllib.parse.parse_qs(parsed.query)
        try:
            route(path, qs)
        except DriveError as exc:
            self._error(_status_for(exc), exc.code, str(exc))
        except Exception:
            logger.exception("unhandled error: %s %s", self.command, self.path)
            self._error(500, StorageError.code, "internal server error")

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _get(self, path: str, qs: dict[str, list[str]]) -> None:
        self._authenticate()
        d = self.drive
        if path == f"{_API}/sync/state":
            since = _int_param(qs, "since", None)
            self._json(d.sync.get_sync_state(since).to_dict())
        elif path in (_FILES, _FILES + "/"):
            self._json([f.to_dict() for f in d.files.list_files()])
        elif path.startswith(_FILES + "/"):
            data = d.files.get_file(path[len(_FILES) + 1:])
            self._bytes(data, "application/octet-stream")
        elif path in (_NOTES, _NOTES + "/"):
            notes = d.notes.list_notes(
                tag=qs.get("tag", [None])[0],
                search=qs.get("q", [None])[0],
                limit=_int_param(qs, "limit", DEFAULT_LIMIT),
                offset=_int_param(qs, "offset", 0),
            )
            self._json(notes.to_dict())
        elif path == f"{_NOTES}/tags":
            self._json({"tags": [t.to_dict() for t in d.notes.get_tags()]})
        elif path == f"{_NOTES}/search":
            query = qs.get("q", [""])[0]
            if not query:
                raise ValidationError("query parameter 'q' required")
            self._json(d.notes.search_notes(query).to_dict())
        elif path.startswith(_NOTES + "/"):
            self._json(d.notes.get_note(path[len(_NOTES) + 1:]).to_dict())
        else:
            raise NotFoundError(f"no route: {path}")

    def _post(self, path: str, qs: dict[str, list[str]]) -> None:  # noqa: ARG002
        d = self.drive
        if path == f"{_API}/auth/challenge":
            body = self._read_json()
            self._json(d.auth.create_challenge(_field(body, "public_key")).to_dict())
        elif path == f"{_API}/auth/verify":
            body = self._read_json()
            token = d.auth.verify_challenge(
                _field(body, "challenge"),
                _field(body, "public_key"),
                _field(body, "signature"),
            )
            self._json(token.to_dict())
        elif path in (_NOTES, _NOTES + "/"):
            self._authenticate()
            body = self._read_json()
            note = d.notes.create_note(
                _field(body, "title"),
                _optional(body, "content", str) or "",
                _optional(body, "tags", list) or [],
            )
            self._json(note.to_dict(), status=201)
        else:
            self._authenticate()
            raise NotFoundError(f"no route: {path}")

    def _put(self, path: str, qs: dict[str, list[str]]) -> None:  # noqa: ARG002
        self._authenticate()
        d = self.drive
        if path.startswith(_FILES + "/"):
            mtime = self.headers.get("X-File-Mtime")
            try:
                client_mtime = int(mtime) if mtime else None
            except ValueError as exc:
                raise ValidationError("X-File-Mtime must be an integer (ms)") from exc
            record = d.files.put_file(path[len(_FILES) + 1:], self._read_body(), client_mtime)
            self._json(record.to_dict())
        elif path.startswith(_NOTES + "/"):
            body = self._read_json()
            note = d.notes.update_note(
                path[len(_NOTES) + 1:],
                title=_optional(body, "title", str),
                content=_optional(body, "content", str),
                tags=_optional(body, "tags", list),
            )
            self._json(note.to_dict())
        else:
            raise NotFoundError(f"no route: {path}")

    def _delete(self, path: str, qs: dict[str, list[str]]) -> None:  # noqa: ARG002
        self._authenticate()
        d = self.drive
        if path.startswith(_FILES + "/"):
            d.files.delete_file(path[len(_FILES) + 1:])
        elif path.startswith(_NOTES + "/"):
            d.notes.delete_note(path[len(_NOTES) + 1:])
        else:
            raise NotFoundError(f"no route: {path}")
        self.send_response(204)
        self.end_headers()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authenticate(self) -> None:
        header = self.headers.get("Authorization", "")
        if not header:
            raise AuthError("missing Authorization header")
        scheme, _, token = header.partition(" ")
        if scheme != "Bearer" or not token.strip():
            raise AuthError("invalid Authorization header format")
        if not self.drive.auth.validate_token(token.strip()):
            raise AuthError("invalid or expired token")

    def _read_body(self) -> bytes:
        raw = self.headers.get("Content-Length") or "0"
        try:
            length = int(raw)
        except ValueError as exc:
            raise ValidationError(f"invalid Content-Length: {raw!r}") from exc
        if length < 0:
            raise ValidationError(f"invalid Content-Length: {raw!r}")
        return self.rfile.read(length) if length else b""

    def _read_json(self) -> dict[str, Any]:
        raw = self._read_body()
        try:
            body = json.loads(raw or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(f"invalid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise ValidationError("JSON body must be an object")
        return body

    def _json(self, payload: Any, status: int = 200) -> None:
        self._bytes(json.dumps(payload).encode(), "application/json", status)

    def _bytes(self, body: bytes, content_type: str, status: int = 200) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _error(self, status: int, code: str, message: str) -> None:
        self._json({"error": code, "message": message}, status)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


def _field(body: dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"missing required field: {name}")
    return value


def _optional(body: dict[str, Any], name: str, kind: type) -> Any:
    value = body.get(name)
    if value is not None and not isinstance(value, kind):
        raise ValidationError(f"field {name} must be a {kind.__name__}")
    return value


class _ThreadingHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    daemon_threads = True


def make_handler(drive: Drive) -> type[_Handler]:
    class _Bound(_Handler):
        pass
    _Bound.drive = drive
    return _Bound


def make_server(drive: Drive, host: str, port: int, *, multithreaded: bool = True) -> HTTPServer:
    server_cls = _ThreadingHTTPServer if multithreaded else HTTPServer
    return server_cls((host, port), make_handler(drive))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class DriveServer:
    """Open the drive, index content, and serve the HTTP API.

    start() does everything up to binding the socket; serve_forever() blocks.
    Port 0 binds an ephemeral port (see `port` after start()).
    """

    def __init__(self, cfg: DriveConfig, host: str | None = None, port: int | None = None) -> None:
        self.cfg = cfg
        self.host = host or cfg.server.host
        self._port = port if port is not None else cfg.server.port
        self.drive: Drive | None = None
        self._httpd: HTTPServer | None = None
        self._sweeper: _Sweeper | None = None

    @property
    def port(self) -> int:
        if self._httpd is not None:
            return self._httpd.server_address[1]
        return self._port

    def start(self) -> None:
        drive = Drive.open(self.cfg)
        self.drive = drive
        drive.load_keys()
        drive.scan()

        sweeper = _Sweeper(drive, self.cfg.auth.cleanup_interval)
        if hasattr(signal, "SIGHUP") and threading.current_thread() is threading.main_thread():
            # Runs on the main thread, possibly while it holds the key lock.
            def _handle_sighup(signum: int, frame: object) -> None:  # noqa: ARG001
                sweeper.reload_requested = True
                logger.info("SIGHUP received, authorized keys reload requested")
            signal.signal(signal.SIGHUP, _handle_sighup)

        self._httpd = make_server(drive, self.host, self._port, multithreaded=self.cfg.server.multithreaded)
        self._sweeper = sweeper
        sweeper.start()
        logger.info("serving on http://%s:%d", self.host, self.port)

    def serve_forever(self) -> None:
        if self._httpd is None:
            self.start()
        assert self._httpd is not None
        self._httpd.serve_forever()

    def shutdown(self) -> None:
        """Stop serving (from another thread) and release resources."""
        if self._httpd is not None:
            self._httpd.shutdown()
        self.close()

    def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
        if self._httpd is not None:
            self._httpd.server_close()
            self._httpd = None
        if self.drive is not None:
            self.drive.close()
            self.drive = None
        logger.info("server stopped")


def serve(cfg: DriveConfig, host: str | None = None, port: int | None = None) -> None:
    """Serve until Ctrl+C."""
    server = DriveServer(cfg, host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()
