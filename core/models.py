"""Core domain models for indexed photos, annotations and library snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import uuid


@dataclass(frozen=True)
class PhotoRecord:
    """A single image discovered under a project root."""

    image_path: str
    sidecar_path: str
    filename: str
    relative_path: str
    modified_at: datetime | None = None

    @property
    def id(self) -> str:
        """Stable identity; the absolute image path."""
        return self.image_path


def _clamp_unit(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


def _single_line(text: str | None) -> str:
    return " ".join((text or "").split())


def new_label_id() -> str:
    """Return a short opaque label identifier such as ``lbl-1a2b3c4d``."""
    return f"lbl-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class PointLabel:
    """A text label pinned to a point in unit image coordinates."""

    id: str
    x: float
    y: float
    text: str

    @classmethod
    def create(
        cls, x: float, y: float, text: str, label_id: str | None = None
    ) -> PointLabel | None:
        """Build a label with clamped coordinates and single-line text.

        Runs of whitespace, line breaks included, collapse into one space.
        Returns None when `text` is empty or whitespace only.
        """
        trimmed = _single_line(text)
        if not trimmed:
            return None
        return cls(
            id=label_id or new_label_id(),
            x=_clamp_unit(x),
            y=_clamp_unit(y),
            text=trimmed,
        )

    def with_text(self, text: str) -> PointLabel | None:
        """Return a copy carrying new single-line text, or None if it is empty."""
        trimmed = _single_line(text)
        if not trimmed:
            return None
        return PointLabel(id=self.id, x=self.x, y=self.y, text=trimmed)


@dataclass
class SidecarDocument:
    """Parsed contents of one sidecar annotation file.

    `front_matter_lines` is passed through untouched on write except for the
    managed keys (`photo`, `tags`, `labels`, `updated_at`).
    """

    front_matter_lines: list[str] = field(default_factory=list)
    notes_markdown: str = ""
    tags: list[str] = field(default_factory=list)
    labels: list[PointLabel] = field(default_factory=list)
    had_front_matter: bool = False
    parse_warning: str | None = None


@dataclass(frozen=True)
class SearchEntry:
    """Lowercased searchable text derived from notes, tags and labels."""

    combined_text: str

    def matches(self, normalized_query: str) -> bool:
        """True when the already-normalized query is a substring of the entry."""
        return normalized_query in self.combined_text

    @classmethod
    def from_annotations(
        cls, notes: str, tags: list[str], labels: list[PointLabel]
    ) -> SearchEntry:
        tag_text = " ".join(tags)
        label_text = " ".join(label.text for label in labels)
        return cls(combined_text=f"{notes} {tag_text} {label_text}".lower())


class SortMode(Enum):
    """Total orders available for the library."""

    FILENAME_ASC = "filename-asc"
    FILENAME_DESC = "filename-desc"
    MODIFIED_ASC = "modified-asc"
    MODIFIED_DESC = "modified-desc"

    def toggled(self) -> SortMode:
        """Flip direction while staying on the same field."""
        return {
            SortMode.FILENAME_ASC: SortMode.FILENAME_DESC,
            SortMode.FILENAME_DESC: SortMode.FILENAME_ASC,
            SortMode.MODIFIED_ASC: SortMode.MODIFIED_DESC,
            SortMode.MODIFIED_DESC: SortMode.MODIFIED_ASC,
        }[self]


ROOT_GROUP_PATH = "/"


@dataclass
class FolderGroup:
    """Records sharing the same parent folder relative to the project root."""

    path: str
    items: list[PhotoRecord] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.path == ROOT_GROUP_PATH


class IndexingState(Enum):
    IDLE = "idle"
    INDEXING = "indexing"
    INDEXED = "indexed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class ThumbnailCacheStats:
    requests: int = 0
    hits: int = 0
    misses: int = 0
    tracked_entries: int = 0


@dataclass
class PerformanceSnapshot:
    """Read-only view of indexing latency, memory and thumbnail cache usage."""

    first_paint_seconds: float | None = None
    full_index_seconds: float | None = None
    indexed_count: int = 0
    memory_mb: float | None = None
    thumbnail_stats: ThumbnailCacheStats = field(default_factory=ThumbnailCacheStats)


class SaveStatus(Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"
    ERROR = "error"


@dataclass(frozen=True)
class NotesSaveState:
    """Save status of the annotation editor, with an optional error message."""

    status: SaveStatus = SaveStatus.CLEAN
    message: str | None = None

    @classmethod
    def error(cls, message: str) -> NotesSaveState:
        return cls(SaveStatus.ERROR, message)

    @property
    def label(self) -> str:
        if self.status is SaveStatus.CLEAN:
            return "Saved"
        if self.status is SaveStatus.DIRTY:
            return "Unsaved changes"
        if self.status is SaveStatus.SAVING:
            return "Saving..."
        return f"Save failed: {self.message or 'unknown error'}"


NOTES_CLEAN = NotesSaveState(SaveStatus.CLEAN)
NOTES_DIRTY = NotesSaveState(SaveStatus.DIRTY)
NOTES_SAVING = NotesSaveState(SaveStatus.SAVING)
