"""Tests for drivesync.notes: NoteService create/update/delete/search."""

from __future__ import annotations

import pytest

from drivesync.errors import NotFoundError, ValidationError


def test_create_and_get(notes):
    created = notes.create_note("Groceries", "buy apples", ["home", "todo"])
    got = notes.get_note(created.id)
    assert got.title == "Groceries"
    assert got.content == "buy apples"
    assert sorted(got.tags) == ["home", "todo"]
    assert got.created_at <= got.updated_at
    assert got.updated_at == created.updated_at


def test_content_with_leading_newline_round_trips(notes):
    created = notes.create_note("T", "\nabc")
    assert created.content == "\nabc"
    assert notes.get_note(created.id).content == "\nabc"


def test_tags_and_search_after_create(notes):
    n = notes.create_note("T", "body", ["x", "y"])
    counts = {(t.name, t.count) for t in notes.get_tags()}
    assert {("x", 1), ("y", 1)} <= counts
    assert [i.id for i in notes.search_notes("body").notes] == [n.id]


def test_note_is_stored_as_markdown_file(notes, tmp_path):
    created = notes.create_note("Title", "body", ["t"])
    text = (tmp_path / "notes" / f"{created.id}.md").read_text()
    assert text.startswith("---\ntitle: Title\ntags: [t]\n---\n")
    assert text.endswith("body")


def test_title_required(notes):
    with pytest.raises(ValidationError):
        notes.create_note("   ", "body")


def test_get_unknown(notes):
    with pytest.raises(NotFoundError):
        notes.get_note("missing")


def test_partial_update_keeps_other_fields(notes):
    n = notes.create_note("Old", "body", ["a"])
    updated = notes.update_note(n.id, title="New")
    assert updated.title == "New"
    assert updated.content == "body"
    assert updated.tags == ["a"]
    assert updated.created_at == n.created_at


def test_update_replaces_tags(notes):
    n = notes.create_note("T", "", ["a", "b"])
    notes.update_note(n.id, tags=["c"])
    assert notes.get_note(n.id).tags == ["c"]
    assert {t.name for t in notes.get_tags()} == {"c"}


def test_update_refreshes_search(notes):
    n = notes.create_note("T", "alpha")
    notes.update_note(n.id, content="omega")
    assert notes.search_notes("alpha").total == 0
    assert [i.id for i in notes.search_notes("omega").notes] == [n.id]


def test_delete(notes, tmp_path):
    n = notes.create_note("T", "findme", ["x"])
    notes.delete_note(n.id)
    with pytest.raises(NotFoundError):
        notes.get_note(n.id)
    with pytest.raises(NotFoundError):
        notes.update_note(n.id, title="again")
    assert notes.get_metadata(n.id).is_deleted
    assert notes.search_notes("findme").total == 0
    assert notes.get_tags() == []
    assert not (tmp_path / "notes" / f"{n.id}.md").exists()


def test_delete_unknown(notes):
    with pytest.raises(NotFoundError):
        notes.delete_note("missing")


def test_list_pagination_and_preview(notes):
    for i in range(5):
        notes.create_note(f"Note {i}", f"**body** {i}")
    page = notes.list_notes(limit=2, offset=1)
    assert page.total == 5
    assert len(page.notes) == 2
    assert page.notes[0].preview.startswith("body")


def test_list_by_tag(notes):
    a = notes.create_note("A", "", ["work"])
    notes.create_note("B", "", ["home"])
    result = notes.get_notes_by_tag("work")
    assert [i.id for i in result.notes] == [a.id]


def test_negative_paging_rejected(notes):
    with pytest.raises(ValidationError):
        notes.list_notes(limit=-1)


def test_tag_counts(notes):
    notes.create_note("A", "", ["shared", "one"])
    notes.create_note("B", "", ["shared"])
    assert [(t.name, t.count) for t in notes.get_tags()] == [("shared", 2), ("one", 1)]


class TestScan:
    def test_hand_written_note_is_indexed(self, notes, tmp_path):
        root = tmp_path / "notes" / "journal"
        root.mkdir(parents=True)
        (root / "day1.md").write_text("# Monday\n\nwent hiking")
        stats = notes.scan_and_index()
        assert stats["new"] == 1
        note = notes.get_note("journal/day1")
        assert note.title == "Monday"
        assert notes.search_notes("hiking").total == 1

    def test_non_markdown_ignored(self, notes, tmp_path):
        (tmp_path / "notes").mkdir(exist_ok=True)
        (tmp_path / "notes" / "image.png").write_bytes(b"\x89PNG")
        assert notes.scan_and_index()["new"] == 0

    def test_rescan_unchanged(self, notes):
        n = notes.create_note("T", "body", ["a"])
        before = notes.get_metadata(n.id)
        stats = notes.scan_and_index()
        assert stats["unchanged"] == 1
        assert notes.get_metadata(n.id).updated_at == before.updated_at
