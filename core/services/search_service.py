"""Per-record search entries built from sidecar annotations."""

from __future__ import annotations

from collections.abc import Callable, Iterable
import threading

from loguru import logger

from core.models import PhotoRecord, PointLabel, SearchEntry
from core.services.interfaces import ISidecarRepository


def normalize_query(query: str | None) -> str:
    """Trim and lowercase a free-text query."""
    return (query or "").strip().lower()


class SearchIndex:
    """Thread-safe map of record id to `SearchEntry`.

    Records without an entry never match a non-empty query, so items whose
    sidecar has not been indexed yet stay hidden instead of showing stale hits.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, SearchEntry] = {}

    def build_entries(
        self,
        records: Iterable[PhotoRecord],
        sidecars: ISidecarRepository,
        should_cancel: Callable[[], bool] | None = None,
    ) -> list[tuple[str, SearchEntry]]:
        """Read sidecars for `records` and derive entries without storing them.

        Runs on a worker thread. Unreadable sidecars are skipped; they stay
        unsearchable until the next successful index.
        """
        updates: list[tuple[str, SearchEntry]] = []
        for record in records:
            if should_cancel is not None and should_cancel():
                break
            try:
                document = sidecars.read_document(record)
            except (OSError, UnicodeDecodeError) as ex:
                logger.debug("Skipping search entry for {}: {}", record.image_path, ex)
                continue
            entry = SearchEntry.from_annotations(
                document.notes_markdown, document.tags, document.labels
            )
            updates.append((record.id, entry))
        return updates

    def apply_background(self, updates: Iterable[tuple[str, SearchEntry]]) -> int:
        """Store background results, never overwriting an existing entry.

        Returns the number of entries added.
        """
        added = 0
        with self._lock:
            for record_id, entry in updates:
                if record_id not in self._entries:
                    self._entries[record_id] = entry
                    added += 1
        return added

    def update(
        self, record_id: str, notes: str, tags: list[str], labels: list[PointLabel]
    ) -> SearchEntry:
        """Replace the entry for an explicitly edited record immediately."""
        entry = SearchEntry.from_annotations(notes, tags, labels)
        with self._lock:
            self._entries[record_id] = entry
        return entry

    def get(self, record_id: str) -> SearchEntry | None:
        with self._lock:
            return self._entries.get(record_id)

    def matches(self, record_id: str, normalized_query: str) -> bool:
        """True for an empty query, else only when an entry exists and contains it."""
        if not normalized_query:
            return True
        with self._lock:
            entry = self._entries.get(record_id)
        return entry is not None and entry.matches(normalized_query)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
