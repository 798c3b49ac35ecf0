"""Tests for drivesync.content: sandboxed byte storage."""

from __future__ import annotations

import os

import pytest

from drivesync.content import ContentStore
from drivesync.errors import NotFoundError, ValidationError


@pytest.fixture
def content(tmp_path):
    return ContentStore(tmp_path / "root")


def test_write_creates_parents(content):
    content.write("a/b/c.txt", b"hello")
    assert content.read("a/b/c.txt") == b"hello"
    assert content.exists("a/b/c.txt")
    assert content.size("a/b/c.txt") == 5


def test_write_text(content):
    content.write("note.md", "héllo")
    assert content.read_text("note.md") == "héllo"


def test_overwrite(content):
    content.write("x", b"one")
    content.write("x", b"two")
    assert content.read("x") == b"two"


@pytest.mark.parametrize("bad", ["", "/etc/passwd", "../outside", "a/../../x", "a/.."])
def test_rejects_escaping_paths(content, bad):
    with pytest.raises(ValidationError):
        content.write(bad, b"x")


def test_rejects_symlink_out_of_root(content, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(outside, content.root / "link")
    with pytest.raises(ValidationError):
        content.write("link/evil.txt", b"x")


def test_read_missing(content):
    with pytest.raises(NotFoundError):
        content.read("missing.txt")


def test_remove(content):
    content.write("x.txt", b"1")
    content.remove("x.txt")
    assert not content.exists("x.txt")
    with pytest.raises(NotFoundError):
        content.remove("x.txt")


def test_list_recursive_sorted_and_skips_temp_files(content):
    content.write("b.txt", b"")
    content.write("a/z.txt", b"")
    (content.root / ".b.txt.tmp-123-456").write_bytes(b"partial")
    assert content.list_recursive() == ["a/z.txt", "b.txt"]


def test_set_mtime_in_ms(content):
    content.write("x.txt", b"1")
    content.set_mtime("x.txt", 1_600_000_000_123)
    assert content.mtime("x.txt") == 1_600_000_000_123
