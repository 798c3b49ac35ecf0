"""Markdown note files with a front-matter header.

    ---
    title: Weekly review
    tags: [planning, work]
    ---

    body text...

Files without front matter (dropped into the notes root by hand) are still
readable: the title falls back to the first "# heading", then to the caller's
default.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from drivesync.errors import ValidationError

_FRONTMATTER_RE = re.compile(r"^---[ \t]*\n(.*?)\n---[ \t]*(?:\n|$)", re.DOTALL)
_FM_KEY_RE = re.compile(r"^(\w+):[ \t]*(.*)$", re.MULTILINE)
_HEADING_RE = re.compile(r"^#[ \t]+(.+?)[ \t]*#*[ \t]*$", re.MULTILINE)
_MD_NOISE_RE = re.compile(r"[#>*_`~\[\]]+")
_FORBIDDEN_TAG_CHARS = frozenset(",[]\n\r")

PREVIEW_CHARS = 200


@dataclass
class ParsedNote:
    title: str
    content: str
    tags: list[str] = field(default_factory=list)


def normalize_tags(tags: list[str] | tuple[str, ...]) -> list[str]:
    """Strip, drop empties and duplicates (first occurrence wins)."""
    result: list[str] = []
    for raw in tags:
        if not isinstance(raw, str):
            raise ValidationError(f"tag must be a string, got {raw!r}")
        tag = raw.strip()
        if not tag:
            continue
        if _FORBIDDEN_TAG_CHARS & set(tag):
            raise ValidationError(f"invalid character in tag: {tag!r}")
        if tag not in result:
            result.append(tag)
    return result


def _parse_tag_list(value: str) -> list[str]:
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    return [t.strip().strip("\"'") for t in value.split(",") if t.strip()]


def parse_note(text: str, default_title: str = "Untitled") -> ParsedNote:
    """Split a note file into title, tags and body."""
    fm: dict[str, str] = {}
    m = _FRONTMATTER_RE.match(text)
    if m:
        for key, val in _FM_KEY_RE.findall(m.group(1)):
            fm[key] = val.strip()
        body = text[m.end():]
        # serialize_note puts one blank line after the closing "---".
        if body.startswith("\n"):
            body = body[1:]
    else:
        body = text

    title = fm.get("title", "").strip().strip("\"'")
    if not title:
        hm = _HEADING_RE.search(body)
        title = hm.group(1) if hm else default_title

    tags = normalize_tags(_parse_tag_list(fm.get("tags", "")))
    return ParsedNote(title=title, content=body, tags=tags)


def serialize_note(note: ParsedNote) -> str:
    title = " ".join(note.title.split())
    lines = ["---", f"title: {title}"]
    if note.tags:
        lines.append(f"tags: [{', '.join(note.tags)}]")
    lines.append("---")
    return "\n".join(lines) + "\n\n" + note.content


def generate_preview(content: str, limit: int = PREVIEW_CHARS) -> str:
    """Plain-text snippet of a note body for list views."""
    text = " ".join(_MD_NOISE_RE.sub(" ", content).split())
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."
