"""Shared fixtures: an index on tmp_path, services over it, and SSH test keys."""

from __future__ import annotations

import base64
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from drivesync.auth import AuthManager
from drivesync.config import AuthConfig, DriveConfig, ServerConfig, StorageConfig
from drivesync.content import ContentStore
from drivesync.files import FileService
from drivesync.metadata import MetadataStore
from drivesync.notes import NoteService
from drivesync.sync import SyncService


def openssh_public(private_key) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    ).decode("ascii")


def sign_ed25519(private_key: ed25519.Ed25519PrivateKey, message: str) -> str:
    return base64.b64encode(private_key.sign(message.encode("utf-8"))).decode("ascii")


@pytest.fixture
def store(tmp_path: Path):
    s = MetadataStore(tmp_path / "index" / "drivesync.db")
    yield s
    s.close()


@pytest.fixture
def files(tmp_path: Path, store: MetadataStore) -> FileService:
    return FileService(ContentStore(tmp_path / "files"), store)


@pytest.fixture
def notes(tmp_path: Path, store: MetadataStore) -> NoteService:
    return NoteService(ContentStore(tmp_path / "notes"), store)


@pytest.fixture
def sync(store: MetadataStore) -> SyncService:
    return SyncService(store)


@pytest.fixture
def private_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def public_key(private_key: ed25519.Ed25519PrivateKey) -> str:
    return openssh_public(private_key)


@pytest.fixture
def authorized_keys(tmp_path: Path, public_key: str) -> Path:
    path = tmp_path / "authorized_keys"
    path.write_text(f"# test keys\n{public_key} tester@laptop\n")
    return path


@pytest.fixture
def auth_config(authorized_keys: Path) -> AuthConfig:
    return AuthConfig(authorized_keys=authorized_keys)


@pytest.fixture
def auth(store: MetadataStore, auth_config: AuthConfig) -> AuthManager:
    manager = AuthManager(store, auth_config)
    manager.load_authorized_keys()
    return manager


@pytest.fixture
def drive_config(tmp_path: Path, authorized_keys: Path) -> DriveConfig:
    root = tmp_path / "drive"
    return DriveConfig(
        server=ServerConfig(host="127.0.0.1", port=0),
        storage=StorageConfig(
            files_root=root / "files",
            notes_root=root / "notes",
            database=root / "drivesync.db",
        ),
        auth=AuthConfig(authorized_keys=authorized_keys),
    )
