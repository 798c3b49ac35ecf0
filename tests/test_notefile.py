"""Tests for drivesync.notefile: front matter parsing and previews."""

from __future__ import annotations

import pytest

from drivesync.errors import ValidationError
from drivesync.notefile import ParsedNote, generate_preview, normalize_tags, parse_note, serialize_note


def test_serialize_then_parse():
    text = serialize_note(ParsedNote(title="Weekly review", content="Body line\n", tags=["work", "plan"]))
    assert text.startswith("---\ntitle: Weekly review\ntags: [work, plan]\n---\n")
    parsed = parse_note(text)
    assert parsed == ParsedNote(title="Weekly review", content="Body line\n", tags=["work", "plan"])


def test_leading_blank_lines_in_body_survive():
    text = serialize_note(ParsedNote(title="T", content="\n\nabc"))
    assert parse_note(text).content == "\n\nabc"


def test_serialize_omits_empty_tags():
    text = serialize_note(ParsedNote(title="T", content="x"))
    assert "tags:" not in text


def test_title_falls_back_to_heading():
    parsed = parse_note("Intro\n\n# Real Title\n\nmore")
    assert parsed.title == "Real Title"
    assert parsed.tags == []


def test_title_falls_back_to_default():
    assert parse_note("no heading here", default_title="idea").title == "idea"


def test_quoted_front_matter_values():
    parsed = parse_note("---\ntitle: \"Quoted\"\ntags: ['a', \"b\"]\n---\nbody")
    assert parsed.title == "Quoted"
    assert parsed.tags == ["a", "b"]
    assert parsed.content == "body"


def test_normalize_tags_strips_and_dedupes():
    assert normalize_tags([" a ", "b", "a", ""]) == ["a", "b"]


@pytest.mark.parametrize("bad", ["a,b", "x]", "new\nline"])
def test_normalize_tags_rejects_separators(bad):
    with pytest.raises(ValidationError):
        normalize_tags([bad])


def test_preview_strips_markdown_and_truncates():
    assert generate_preview("# Head\n\n**bold** text") == "Head bold text"
    long = generate_preview("word " * 100, limit=20)
    assert long.endswith("...")
    assert len(long) <= 23
