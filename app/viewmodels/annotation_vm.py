"""ViewModel for editing the annotations of the selected photo."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import copy
from typing import Any

from loguru import logger

from app.viewmodels.library_vm import LibraryVM
from core.models import (
    NOTES_CLEAN,
    NOTES_DIRTY,
    NOTES_SAVING,
    NotesSaveState,
    PhotoRecord,
    PointLabel,
    SaveStatus,
    SidecarDocument,
)
from core.services.sort_service import natural_sort_key

DEFAULT_AUTOSAVE_DELAY = 0.6

READ_FAILED_MESSAGE = "Could not read sidecar file."
AUTOSAVE_FAILED_MESSAGE = "Autosave failed. Edits remain in memory."
SWITCH_SAVE_FAILED_MESSAGE = "Autosave failed while changing photos."


def normalize_tag(raw: str) -> str:
    """Collapse runs of whitespace into single spaces and trim."""
    return " ".join((raw or "").split())


class AnnotationVM:
    """Notes, tags and point labels of one photo, with debounced autosave.

    Edits are held in memory and written through the library's sidecar
    repository. Each successful save also refreshes the library's search entry
    so filtering reflects the edit without waiting for a re-index.
    """

    def __init__(
        self,
        library: LibraryVM,
        autosave_delay: float = DEFAULT_AUTOSAVE_DELAY,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._library = library
        self._sidecars = library.sidecars
        self._autosave_delay = max(0.0, float(autosave_delay))
        self._on_change = on_change

        self._record: PhotoRecord | None = None
        self._document: SidecarDocument | None = None
        self.notes = ""
        self.tags: list[str] = []
        self.labels: list[PointLabel] = []
        self.save_state: NotesSaveState = NOTES_CLEAN
        self.status_message: str | None = None
        self._autosave_handle: asyncio.TimerHandle | None = None
        # Set while the last write failed and the edits exist only in memory.
        self._save_failed = False

    @classmethod
    def from_settings(
        cls,
        library: LibraryVM,
        settings: Any,
        on_change: Callable[[], None] | None = None,
    ) -> AnnotationVM:
        delay = settings.get("annotations.autosave_delay_seconds", DEFAULT_AUTOSAVE_DELAY)
        return cls(library, autosave_delay=float(delay), on_change=on_change)

    @property
    def record(self) -> PhotoRecord | None:
        return self._record

    @property
    def is_dirty(self) -> bool:
        return self.save_state.status is SaveStatus.DIRTY

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    # Selection
    def open(self, record: PhotoRecord | None) -> bool:
        """Flush pending edits of the current photo, then load `record`.

        Returns False and stays on the current photo when its edits cannot be
        saved, so they are not replaced by what `record` has on disk.
        """
        if not self.flush(SWITCH_SAVE_FAILED_MESSAGE):
            self._changed()
            return False
        self._record = record
        self._load()
        self._changed()
        return True

    def _load(self) -> None:
        record = self._record
        self._save_failed = False
        if record is None:
            self._reset_fields()
            self.save_state = NOTES_CLEAN
            self.status_message = None
            return
        try:
            document = self._sidecars.read_document(record)
        except (OSError, UnicodeDecodeError) as ex:
            logger.warning("Could not read sidecar {}: {}", record.sidecar_path, ex)
            self._reset_fields()
            self.save_state = NotesSaveState.error(str(ex))
            self.status_message = READ_FAILED_MESSAGE
            return
        self._document = document
        self.notes = document.notes_markdown
        self.tags = list(document.tags)
        self.labels = list(document.labels)
        self.save_state = NOTES_CLEAN
        self.status_message = document.parse_warning

    def _reset_fields(self) -> None:
        self._document = None
        self.notes = ""
        self.tags = []
        self.labels = []

    # Navigation
    def _current_index(self) -> int | None:
        return self._library.index_of(self._record)

    @property
    def can_go_to_previous(self) -> bool:
        index = self._current_index()
        return index is not None and index > 0

    @property
    def can_go_to_next(self) -> bool:
        index = self._current_index()
        return index is not None and index + 1 < len(self._library.displayed_items)

    def go_to_previous(self) -> bool:
        previous, _ = self._library.neighbours(self._record)
        if previous is None:
            return False
        return self.open(previous)

    def go_to_next(self) -> bool:
        _, following = self._library.neighbours(self._record)
        if following is None:
            return False
        return self.open(following)

    # Edits
    def _mark_dirty(self) -> None:
        self.save_state = NOTES_DIRTY
        self._schedule_autosave()
        self._changed()

    def update_notes(self, text: str) -> None:
        self.notes = text
        self.status_message = None
        self._mark_dirty()

    def add_tag(self, raw: str) -> bool:
        """Add a normalized tag unless it is empty or already present (any case)."""
        tag = normalize_tag(raw)
        if not tag:
            return False
        folded = tag.casefold()
        if any(existing.casefold() == folded for existing in self.tags):
            return False
        self.tags = sorted([*self.tags, tag], key=natural_sort_key)
        self._mark_dirty()
        return True

    def remove_tag(self, tag: str) -> None:
        self.tags = [t for t in self.tags if t != tag]
        self._mark_dirty()

    def add_label(self, x: float, y: float, text: str) -> PointLabel | None:
        label = PointLabel.create(x, y, text)
        if label is None:
            return None
        self.labels = [*self.labels, label]
        self._mark_dirty()
        return label

    def remove_label(self, label_id: str) -> None:
        self.labels = [label for label in self.labels if label.id != label_id]
        self._mark_dirty()

    def update_label(self, label_id: str, text: str) -> bool:
        for index, label in enumerate(self.labels):
            if label.id != label_id:
                continue
            updated = label.with_text(text)
            if updated is None:
                return False
            self.labels = [*self.labels[:index], updated, *self.labels[index + 1 :]]
            self._mark_dirty()
            return True
        return False

    # Persistence
    def _schedule_autosave(self) -> None:
        self._cancel_autosave()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to debounce on; edits are saved by flush() or save().
            return
        self._autosave_handle = loop.call_later(self._autosave_delay, self._autosave)

    def _cancel_autosave(self) -> None:
        if self._autosave_handle is not None:
            self._autosave_handle.cancel()
            self._autosave_handle = None

    def _autosave(self) -> None:
        self._autosave_handle = None
        if not self.is_dirty:
            return
        self.save_state = NOTES_SAVING
        self.save(AUTOSAVE_FAILED_MESSAGE)
        self._changed()

    def flush(self, failure_message: str = AUTOSAVE_FAILED_MESSAGE) -> bool:
        """Cancel any pending autosave and save now if there are unsaved edits.

        Edits left in memory by a failed save are written again.
        """
        self._cancel_autosave()
        if not (self.is_dirty or self._save_failed):
            return True
        return self.save(failure_message)

    def save(self, failure_message: str = AUTOSAVE_FAILED_MESSAGE) -> bool:
        """Write the current edits to the sidecar.

        Returns False and keeps the edits in memory when the write fails.
        """
        self._cancel_autosave()
        record = self._record
        if record is None:
            return True
        if self._document is not None:
            document = copy.deepcopy(self._document)
        else:
            document = SidecarDocument(front_matter_lines=[f"photo: {record.filename}"])
        document.notes_markdown = self.notes
        document.tags = list(self.tags)
        document.labels = list(self.labels)
        document.parse_warning = None

        try:
            self._sidecars.write_document(document, record)
        except OSError as ex:
            logger.error("Saving annotations for {} failed: {}", record.image_path, ex)
            self.save_state = NotesSaveState.error(str(ex))
            self.status_message = failure_message
            self._save_failed = True
            return False

        self._document = document
        self._save_failed = False
        self._library.update_search(record, self.notes, self.tags, self.labels)
        self.save_state = NOTES_CLEAN
        self.status_message = None
        logger.debug("Saved annotations for {}", record.image_path)
        return True

    def close(self) -> None:
        self.flush()
