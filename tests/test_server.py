"""End-to-end tests against a real DriveServer on an ephemeral port."""

from __future__ import annotations

import http.client
import json
import signal
import threading
import time
import urllib.error
import urllib.request

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from drivesync.server import DriveServer

from conftest import openssh_public, sign_ed25519


@pytest.fixture
def server(drive_config):
    saved = signal.getsignal(signal.SIGHUP) if hasattr(signal, "SIGHUP") else None
    srv = DriveServer(drive_config, host="127.0.0.1", port=0)
    srv.start()
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.shutdown()
    thread.join(timeout=5)
    if saved is not None:
        signal.signal(signal.SIGHUP, saved)


class Client:
    def __init__(self, port: int) -> None:
        self.base = f"http://127.0.0.1:{port}"
        self.token: str | None = None

    def request(self, method, path, body=None, headers=None):
        """Return (status, parsed JSON or raw bytes)."""
        headers = dict(headers or {})
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode()
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(self.base + path, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=5) as resp:
                status, ctype, raw = resp.status, resp.headers.get("Content-Type", ""), resp.read()
        except urllib.error.HTTPError as exc:
            status, ctype, raw = exc.code, exc.headers.get("Content-Type", ""), exc.read()
        if ctype == "application/json":
            return status, json.loads(raw)
        return status, raw

    def login(self, private_key, public_key):
        status, ch = self.request("POST", "/api/v1/auth/challenge", {"public_key": public_key})
        assert status == 200
        status, tok = self.request("POST", "/api/v1/auth/verify", {
            "challenge": ch["challenge"],
            "public_key": public_key,
            "signature": sign_ed25519(private_key, ch["challenge"]),
        })
        assert status == 200
        self.token = tok["token"]


@pytest.fixture
def client(server, private_key, public_key):
    c = Client(server.port)
    c.login(private_key, public_key)
    return c


def test_requires_token(server):
    status, body = Client(server.port).request("GET", "/api/v1/files")
    assert status == 401
    assert body["error"] == "auth_failed"


def test_bad_token(server):
    c = Client(server.port)
    c.token = "forged"
    status, _ = c.request("GET", "/api/v1/sync/state")
    assert status == 401


def test_unauthorized_key(server):
    status, body = Client(server.port).request(
        "POST", "/api/v1/auth/challenge", {"public_key": "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIB"}
    )
    assert status == 401
    assert body["error"] == "auth_failed"


def test_bad_signature(server, public_key):
    c = Client(server.port)
    _, ch = c.request("POST", "/api/v1/auth/challenge", {"public_key": public_key})
    status, _ = c.request("POST", "/api/v1/auth/verify", {
        "challenge": ch["challenge"], "public_key": public_key, "signature": "AAAA",
    })
    assert status == 401


def test_missing_field(server):
    status, body = Client(server.port).request("POST", "/api/v1/auth/challenge", {})
    assert status == 400
    assert body["error"] == "bad_request"


def test_file_lifecycle(client):
    status, rec = client.request(
        "PUT", "/api/v1/files/docs/hello.txt", b"hi there", {"X-File-Mtime": "1600000000000"}
    )
    assert status == 200
    assert rec["size"] == 8
    assert rec["mtime"] == 1600000000000

    status, data = client.request("GET", "/api/v1/files/docs/hello.txt")
    assert (status, data) == (200, b"hi there")

    status, listing = client.request("GET", "/api/v1/files")
    assert [f["path"] for f in listing] == ["docs/hello.txt"]

    status, _ = client.request("DELETE", "/api/v1/files/docs/hello.txt")
    assert status == 204
    status, body = client.request("GET", "/api/v1/files/docs/hello.txt")
    assert status == 404
    assert body["error"] == "not_found"


def test_path_escape_is_bad_request(client):
    status, _ = client.request("PUT", "/api/v1/files/..%2F..%2Fetc%2Fx", b"x")
    assert status == 400


def test_bad_mtime_header(client):
    status, _ = client.request("PUT", "/api/v1/files/a.txt", b"x", {"X-File-Mtime": "soon"})
    assert status == 400


def test_note_lifecycle(client):
    status, note = client.request(
        "POST", "/api/v1/notes", {"title": "Ideas", "content": "solar kettle", "tags": ["lab"]}
    )
    assert status == 201
    note_id = note["id"]

    status, got = client.request("GET", f"/api/v1/notes/{note_id}")
    assert got["content"] == "solar kettle"

    status, updated = client.request("PUT", f"/api/v1/notes/{note_id}", {"tags": ["lab", "home"]})
    assert status == 200
    assert updated["title"] == "Ideas"

    _, tags = client.request("GET", "/api/v1/notes/tags")
    assert {t["name"] for t in tags["tags"]} == {"lab", "home"}

    _, found = client.request("GET", "/api/v1/notes/search?q=kettle")
    assert [n["id"] for n in found["notes"]] == [note_id]

    _, listed = client.request("GET", "/api/v1/notes?tag=home")
    assert listed["total"] == 1

    status, _ = client.request("DELETE", f"/api/v1/notes/{note_id}")
    assert status == 204
    status, _ = client.request("GET", f"/api/v1/notes/{note_id}")
    assert status == 404


def test_create_note_without_title(client):
    status, body = client.request("POST", "/api/v1/notes", {"content": "x"})
    assert status == 400


def test_invalid_json(client):
    status, _ = client.request(
        "POST", "/api/v1/notes", b"{not json", {"Content-Type": "application/json"}
    )
    assert status == 400


def test_sync_state(client):
    _, first = client.request("GET", "/api/v1/sync/state")
    client.request("PUT", "/api/v1/files/a.txt", b"1")
    _, delta = client.request("GET", f"/api/v1/sync/state?since={first['server_time'] - 1}")
    assert [f["path"] for f in delta["files"]] == ["a.txt"]


def test_bad_since(client):
    status, _ = client.request("GET", "/api/v1/sync/state?since=yesterday")
    assert status == 400


def test_unknown_route(client):
    status, body = client.request("GET", "/api/v1/nothing")
    assert status == 404
    assert body["error"] == "not_found"


def test_startup_indexes_existing_content(drive_config, private_key, public_key):
    drive_config.storage.files_root.mkdir(parents=True)
    (drive_config.storage.files_root / "preexisting.txt").write_bytes(b"old")
    saved = signal.getsignal(signal.SIGHUP) if hasattr(signal, "SIGHUP") else None
    srv = DriveServer(drive_config, port=0)
    srv.start()
    try:
        assert srv.drive.files.get_file("preexisting.txt") == b"old"
    finally:
        srv.close()
        if saved is not None:
            signal.signal(signal.SIGHUP, saved)


@pytest.mark.parametrize("length", ["-5", "lots"])
def test_bad_content_length(server, client, length):
    conn = http.client.HTTPConnection("127.0.0.1", server.port, timeout=5)
    try:
        conn.request("PUT", "/api/v1/files/a.txt", body=b"", headers={
            "Authorization": f"Bearer {client.token}",
            "Content-Length": length,
        })
        resp = conn.getresponse()
        assert resp.status == 400
        assert json.loads(resp.read())["error"] == "bad_request"
    finally:
        conn.close()


@pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="no SIGHUP on this platform")
def test_sighup_while_key_lock_held(server, drive_config):
    newcomer = openssh_public(ed25519.Ed25519PrivateKey.generate())
    with drive_config.auth.authorized_keys.open("a") as f:
        f.write(f"{newcomer}\n")
    auth = server.drive.auth
    # The handler runs on this thread while it holds the lock; it must not block.
    with auth._keys_lock:
        signal.raise_signal(signal.SIGHUP)
    deadline = time.monotonic() + 5
    while not auth.is_authorized(newcomer) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert auth.is_authorized(newcomer)
