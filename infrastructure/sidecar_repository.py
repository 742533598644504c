"""Markdown sidecar persistence for photo annotations.

Each photo `IMG_0001.jpg` owns a sidecar `IMG_0001.md` laid out as::

    ---
    photo: IMG_0001.jpg
    tags:
      - "reunion"
    labels:
      - id: lbl-1a2b3c4d
        x: 0.250000
        y: 0.400000
        text: "Dad"
    updated_at: 2024-05-01T10:00:00Z
    ---

    free-form markdown notes

Only `photo`, `tags`, `labels` and `updated_at` are owned here. Any other
front-matter key, with its indented continuation lines, is carried through
verbatim. Reading never raises on malformed content; it degrades to treating
the file as plain notes.
"""

from __future__ import annotations

import math
import os
from pathlib import Path
import re

from loguru import logger

from core.models import PhotoRecord, PointLabel, SidecarDocument
from core.services.interfaces import ISidecarRepository
from infrastructure.utils import format_iso8601_utc

FRONT_MATTER_DELIMITER = "---"
MANAGED_KEYS = frozenset({"photo", "updated_at", "tags", "labels"})
MALFORMED_FRONT_MATTER_WARNING = "Malformed front matter. Notes were loaded as plain markdown."


def _split_lines(raw: str) -> list[str]:
    """Split on any newline convention, keeping trailing empty lines."""
    return raw.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def _top_level_key(line: str) -> str | None:
    """Return the key for a column-zero `key: value` line, else None."""
    if line.startswith((" ", "\t")) or ":" not in line:
        return None
    return line.split(":", 1)[0].strip()


def _split_key_value(line: str) -> tuple[str, str] | None:
    if ":" not in line:
        return None
    key, value = line.split(":", 1)
    key = key.strip()
    if not key:
        return None
    return key, value.strip()


_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", '"': '"', "n": "\n", "r": "\r"}
_ESCAPE_SEQUENCE = re.compile(r'\\(["\\nr])')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return _ESCAPE_SEQUENCE.sub(lambda m: _UNESCAPES[m.group(1)], value[1:-1])
    return value


def _escape_double_quotes(value: str) -> str:
    """Escape a value for a double-quoted scalar so it stays on one line."""
    return "".join(_ESCAPES.get(char, char) for char in value)


def _parse_coordinate(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return min(max(value, 0.0), 1.0)


def _block_lines(key: str, lines: list[str]) -> list[str] | None:
    """Collect the header line of `key` plus its continuation lines."""
    collected: list[str] = []
    in_block = False
    for line in lines:
        top_level = _top_level_key(line)
        if top_level is not None:
            if in_block:
                break
            if top_level == key:
                in_block = True
                collected.append(line)
            continue
        if in_block:
            collected.append(line)
    return collected or None


def parse_tags(lines: list[str]) -> list[str]:
    """Parse `tags` as an inline `[a, "b"]` list or a block of `- ` items."""
    block = _block_lines("tags", lines)
    if block is None:
        return []

    inline = block[0].split(":", 1)[1].strip()
    if inline.startswith("[") and inline.endswith("]"):
        parts = (_unquote(part.strip()) for part in inline[1:-1].split(","))
        return [part for part in parts if part]

    tags: list[str] = []
    for line in block[1:]:
        trimmed = line.strip()
        if not trimmed.startswith("- "):
            continue
        tags.append(_unquote(trimmed[2:].strip()))
    return tags


def parse_labels(lines: list[str]) -> list[PointLabel]:
    """Parse the `labels` block; invalid entries are dropped silently."""
    block = _block_lines("labels", lines)
    if block is None:
        return []

    items: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in block[1:]:
        trimmed = line.strip()
        if trimmed.startswith("- "):
            if current:
                items.append(current)
                current = {}
            trimmed = trimmed[2:]
        pair = _split_key_value(trimmed)
        if pair is not None:
            current[pair[0]] = pair[1]
    if current:
        items.append(current)

    labels: list[PointLabel] = []
    for item in items:
        x = _parse_coordinate(item.get("x"))
        y = _parse_coordinate(item.get("y"))
        if x is None or y is None:
            continue
        label = PointLabel.create(x, y, _unquote(item.get("text", "")), label_id=item.get("id"))
        if label is not None:
            labels.append(label)
    return labels


def remove_managed_blocks(lines: list[str]) -> list[str]:
    """Drop managed keys and their continuation lines; trim trailing blanks."""
    result: list[str] = []
    current_key: str | None = None
    for line in lines:
        key = _top_level_key(line)
        if key is not None:
            current_key = key
            if key not in MANAGED_KEYS:
                result.append(line)
            continue
        if current_key is not None and current_key in MANAGED_KEYS:
            continue
        result.append(line)

    while result and not result[-1].strip():
        result.pop()
    return result


def render_tags_block(tags: list[str]) -> list[str]:
    normalized = [" ".join(_unquote(tag.strip()).split()) for tag in tags]
    normalized = [tag for tag in normalized if tag]
    if not normalized:
        return []
    return ["tags:"] + [f'  - "{_escape_double_quotes(tag)}"' for tag in normalized]


def render_labels_block(labels: list[PointLabel]) -> list[str]:
    if not labels:
        return []
    lines = ["labels:"]
    for label in labels:
        lines.append(f"  - id: {label.id}")
        lines.append(f"    x: {label.x:.6f}")
        lines.append(f"    y: {label.y:.6f}")
        lines.append(f'    text: "{_escape_double_quotes(label.text)}"')
    return lines


def _default_document(
    filename: str, notes: str = "", warning: str | None = None
) -> SidecarDocument:
    return SidecarDocument(
        front_matter_lines=[f"photo: {filename}"],
        notes_markdown=notes,
        had_front_matter=False,
        parse_warning=warning,
    )


def parse_document(raw: str, photo_filename: str) -> SidecarDocument:
    """Parse raw sidecar text into a `SidecarDocument` without raising."""
    lines = _split_lines(raw)
    if lines[0].strip() != FRONT_MATTER_DELIMITER:
        return _default_document(photo_filename, notes=raw)

    closing_index = next(
        (i for i in range(1, len(lines)) if lines[i].strip() == FRONT_MATTER_DELIMITER),
        None,
    )
    if closing_index is None:
        logger.warning("Unclosed front matter in sidecar for {}", photo_filename)
        return _default_document(
            photo_filename, notes=raw, warning=MALFORMED_FRONT_MATTER_WARNING
        )

    front_matter = lines[1:closing_index]
    notes = "\n".join(lines[closing_index + 1 :])
    if notes.startswith("\n"):
        notes = notes[1:]

    return SidecarDocument(
        front_matter_lines=front_matter,
        notes_markdown=notes,
        tags=parse_tags(front_matter),
        labels=parse_labels(front_matter),
        had_front_matter=True,
        parse_warning=None,
    )


def render_document(document: SidecarDocument, photo_filename: str, updated_at: str) -> str:
    """Serialize `document`, regenerating the managed front-matter blocks."""
    lines = remove_managed_blocks(document.front_matter_lines)
    lines.append(f"photo: {photo_filename}")
    lines.extend(render_tags_block(document.tags))
    lines.extend(render_labels_block(document.labels))
    lines.append(f"updated_at: {updated_at}")
    front_matter = "\n".join(lines)
    delimiter = FRONT_MATTER_DELIMITER
    return f"{delimiter}\n{front_matter}\n{delimiter}\n\n{document.notes_markdown}"


def atomic_write_text(path: Path, text: str) -> None:
    """Write `text` to a hidden sibling file and move it over `path`.

    Readers see either the previous file or the complete new one.
    """
    temporary = path.with_name(f".{path.name}.tmp")
    try:
        with temporary.open("w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temporary, path)
    except OSError:
        try:
            temporary.unlink()
        except OSError:
            pass
        raise


class SidecarRepository(ISidecarRepository):
    """Load and save `SidecarDocument`s next to their images."""

    def read_document(self, record: PhotoRecord) -> SidecarDocument:
        """Read the sidecar for `record`; missing files yield a default document."""
        path = Path(record.sidecar_path)
        if not path.exists():
            return _default_document(record.filename)
        with path.open("r", encoding="utf-8", newline="") as f:
            raw = f.read()
        return parse_document(raw, record.filename)

    def write_document(self, document: SidecarDocument, record: PhotoRecord) -> None:
        """Write `document` for `record`; raises OSError on failure."""
        path = Path(record.sidecar_path)
        output = render_document(document, record.filename, format_iso8601_utc())
        atomic_write_text(path, output)
        logger.debug("Wrote sidecar {}", path)
