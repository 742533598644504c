"""ViewModel for the photo library: streaming indexing, ordering, search and metrics.

`LibraryVM` consumes batches from an `IMediaIndexer`, merges each batch into a
filename-ordered accumulator, publishes the accumulator in throttled steps and
derives the displayed, filtered and grouped views from the published snapshot.
Everything runs on one asyncio event loop; blocking work (walking the tree,
reading sidecars, decoding thumbnails) happens in worker threads.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable
from contextlib import aclosing
import dataclasses
from enum import Enum
from pathlib import Path
import threading
import time
from typing import Any

from loguru import logger

from core.models import (
    FolderGroup,
    IndexingState,
    PerformanceSnapshot,
    PhotoRecord,
    PointLabel,
    SortMode,
)
from core.services.interfaces import IMediaIndexer, ISidecarRepository, IThumbnailProvider
from core.services.search_service import SearchIndex, normalize_query
from core.services.sort_service import SortService
from infrastructure.image_service import ThumbnailService
from infrastructure.media_indexer import DEFAULT_BATCH_SIZE, FilesystemMediaIndexer
from infrastructure.sidecar_repository import SidecarRepository
from infrastructure.utils import resident_memory_mb

DEFAULT_PUBLISH_BATCH_SIZE = 25
DEFAULT_POLL_SECONDS = 0.5
DEFAULT_PREFETCH_LIMIT = 72
DEFAULT_PREFETCH_SIZE = 360


class LibraryEvent(Enum):
    CATALOG_CHANGED = "catalog_changed"
    STATE_CHANGED = "state_changed"
    PERFORMANCE_UPDATED = "performance_updated"


LibrarySubscriber = Callable[[LibraryEvent], None]


class Generation:
    """Background tasks started by one project load and torn down together."""

    def __init__(self, number: int) -> None:
        self.number = number
        self.cancel_event = threading.Event()
        self.walker: asyncio.Task | None = None
        self.poller: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._search_tasks: set[asyncio.Task] = set()
        self.closed = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None, search: bool = False
    ) -> asyncio.Task:
        """Schedule `coro` on the running loop as part of this generation."""
        if self.closed:
            coro.close()
            raise RuntimeError(f"Generation {self.number} is closed")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if search:
            self._search_tasks.add(task)
            task.add_done_callback(self._search_tasks.discard)
        return task

    def pending_search_tasks(self) -> list[asyncio.Task]:
        return [t for t in self._search_tasks if not t.done()]

    async def aclose(self) -> None:
        """Signal cancellation, cancel every task and wait for them to finish."""
        self.closed = True
        self.cancel_event.set()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class LibraryVM:
    """Main library view-model.

    Query surface: `displayed_items`, `displayed_groups`, `state`,
    `indexed_count`, `indexing_error_message` and `performance`. Changes are
    announced to callbacks registered with `subscribe`.
    """

    def __init__(
        self,
        indexer: IMediaIndexer | None = None,
        sidecars: ISidecarRepository | None = None,
        thumbnails: IThumbnailProvider | None = None,
        sorter: SortService | None = None,
        search_index: SearchIndex | None = None,
        publish_batch_size: int = DEFAULT_PUBLISH_BATCH_SIZE,
        performance_poll_seconds: float = DEFAULT_POLL_SECONDS,
        group_by_folder: bool = True,
        prefetch_limit: int = DEFAULT_PREFETCH_LIMIT,
        prefetch_size: int = DEFAULT_PREFETCH_SIZE,
    ) -> None:
        """Create a LibraryVM.

        Args:
            indexer: Source of photo batches (defaults to the filesystem walker).
            sidecars: Sidecar reader used for background search indexing.
            thumbnails: Thumbnail cache whose counters feed the performance snapshot.
            sorter: Sorting service (defaults to `SortService`).
            search_index: Search entry store (defaults to a fresh `SearchIndex`).
            publish_batch_size: Unpublished records needed before the next publish.
            performance_poll_seconds: Interval of the snapshot refresh while indexing.
            group_by_folder: Initial folder grouping flag.
            prefetch_limit: Default number of items warmed by `prefetch_thumbnails`.
            prefetch_size: Default thumbnail side used for prefetching.
        """
        self._indexer = indexer or FilesystemMediaIndexer()
        self._sidecars = sidecars or SidecarRepository()
        self._thumbnails = thumbnails or ThumbnailService()
        self._sorter = sorter or SortService()
        self._search = search_index or SearchIndex()
        self._publish_batch_size = max(1, int(publish_batch_size))
        self._poll_seconds = max(0.01, float(performance_poll_seconds))
        self._prefetch_limit = max(0, int(prefetch_limit))
        self._prefetch_size = max(1, int(prefetch_size))

        self._root_path: str | None = None
        self._merged: list[PhotoRecord] = []
        self._published: list[PhotoRecord] = []
        self._unpublished_count = 0
        self._displayed: list[PhotoRecord] = []
        self._groups: list[FolderGroup] = []

        self._search_query = ""
        self._sort_mode = SortMode.FILENAME_ASC
        self._group_by_folder = bool(group_by_folder)

        self._state = IndexingState.IDLE
        self._error_message: str | None = None
        self._performance = PerformanceSnapshot()
        self._start_time: float | None = None
        self._finalized = False

        self._generation: Generation | None = None
        self._generation_counter = 0
        self._prefetch_task: asyncio.Task | None = None
        self._prefetch_cancel: threading.Event | None = None
        self._subscribers: list[LibrarySubscriber] = []

    @classmethod
    def from_settings(cls, settings: Any) -> LibraryVM:
        """Build a LibraryVM with filesystem-backed services configured by `settings`."""
        return cls(
            indexer=FilesystemMediaIndexer(
                batch_size=int(settings.get("indexing.batch_size", DEFAULT_BATCH_SIZE))
            ),
            sidecars=SidecarRepository(),
            thumbnails=ThumbnailService(settings=settings),
            publish_batch_size=int(
                settings.get("library.publish_batch_size", DEFAULT_PUBLISH_BATCH_SIZE)
            ),
            performance_poll_seconds=float(
                settings.get("library.performance_poll_seconds", DEFAULT_POLL_SECONDS)
            ),
            group_by_folder=bool(settings.get("library.group_by_folder", True)),
            prefetch_limit=int(settings.get("thumbnails.prefetch_limit", DEFAULT_PREFETCH_LIMIT)),
            prefetch_size=int(settings.get("thumbnails.prefetch_size", DEFAULT_PREFETCH_SIZE)),
        )

    # Query surface
    @property
    def root_path(self) -> str | None:
        return self._root_path

    @property
    def state(self) -> IndexingState:
        return self._state

    @property
    def is_indexing(self) -> bool:
        return self._state is IndexingState.INDEXING

    @property
    def indexed_count(self) -> int:
        """Records merged so far, including ones not yet published."""
        return len(self._merged)

    @property
    def indexing_error_message(self) -> str | None:
        return self._error_message

    @property
    def performance(self) -> PerformanceSnapshot:
        return dataclasses.replace(self._performance)

    @property
    def thumbnails(self) -> IThumbnailProvider:
        return self._thumbnails

    @property
    def sidecars(self) -> ISidecarRepository:
        return self._sidecars

    @property
    def all_items(self) -> list[PhotoRecord]:
        """Published records in canonical filename order, unfiltered."""
        return list(self._published)

    @property
    def displayed_items(self) -> list[PhotoRecord]:
        """Published records that match the query, in the active sort order."""
        return list(self._displayed)

    @property
    def displayed_groups(self) -> list[FolderGroup]:
        """Displayed records partitioned by folder; empty when grouping is off."""
        return [FolderGroup(path=g.path, items=list(g.items)) for g in self._groups]

    @property
    def search_query(self) -> str:
        return self._search_query

    @search_query.setter
    def search_query(self, value: str) -> None:
        self._search_query = value or ""
        self._refresh_views()
        self._notify(LibraryEvent.CATALOG_CHANGED)

    @property
    def sort_mode(self) -> SortMode:
        return self._sort_mode

    @sort_mode.setter
    def sort_mode(self, value: SortMode) -> None:
        self._sort_mode = value
        self._refresh_views()
        self._notify(LibraryEvent.CATALOG_CHANGED)

    def toggle_sort_direction(self) -> None:
        self.sort_mode = self._sort_mode.toggled()

    @property
    def group_by_folder(self) -> bool:
        return self._group_by_folder

    @group_by_folder.setter
    def group_by_folder(self, value: bool) -> None:
        self._group_by_folder = bool(value)
        self._refresh_views()
        self._notify(LibraryEvent.CATALOG_CHANGED)

    def index_of(self, record: PhotoRecord | str | None) -> int | None:
        """Position of `record` (or its id) within `displayed_items`."""
        if record is None:
            return None
        record_id = record if isinstance(record, str) else record.id
        for index, item in enumerate(self._displayed):
            if item.id == record_id:
                return index
        return None

    def neighbours(
        self, record: PhotoRecord | str | None
    ) -> tuple[PhotoRecord | None, PhotoRecord | None]:
        """Previous and next displayed records around `record`, without wrapping."""
        index = self.index_of(record)
        if index is None:
            return None, None
        previous = self._displayed[index - 1] if index > 0 else None
        following = self._displayed[index + 1] if index + 1 < len(self._displayed) else None
        return previous, following

    # Subscriptions
    def subscribe(self, callback: LibrarySubscriber) -> Callable[[], None]:
        """Register `callback` for library events; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, event: LibraryEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("Library subscriber failed on {}", event.value)

    # Project lifecycle
    async def load_project(self, root: str | Path) -> None:
        """Start indexing `root`, replacing any previous project.

        The previous generation is cancelled and awaited first. The search query
        is cleared; sort mode and folder grouping are kept.
        """
        await self._teardown()

        self._root_path = str(root)
        self._merged = []
        self._published = []
        self._unpublished_count = 0
        self._search.clear()
        self._search_query = ""
        self._error_message = None
        self._finalized = False
        self._thumbnails.reset_stats()
        self._performance = PerformanceSnapshot()
        self._start_time = time.perf_counter()
        self._state = IndexingState.INDEXING

        self._generation_counter += 1
        generation = Generation(self._generation_counter)
        self._generation = generation
        logger.info("Loading project {} (generation {})", self._root_path, generation.number)

        self._refresh_views()
        self._update_performance()
        self._notify(LibraryEvent.CATALOG_CHANGED)
        self._notify(LibraryEvent.STATE_CHANGED)

        generation.poller = generation.spawn(
            self._poll_performance(generation), name=f"performance-poll-{generation.number}"
        )
        generation.walker = generation.spawn(
            self._run_indexing(generation, self._root_path), name=f"walk-{generation.number}"
        )

    async def wait_until_indexed(self) -> None:
        """Wait for the current walk to end, whatever its outcome."""
        generation = self._generation
        if generation is None or generation.walker is None:
            return
        await asyncio.wait([generation.walker])

    async def wait_for_search_index(self) -> None:
        """Wait for the walk and every search-indexing task it dispatched."""
        generation = self._generation
        if generation is None:
            return
        while True:
            pending = generation.pending_search_tasks()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                continue
            if generation.walker is not None and not generation.walker.done():
                await asyncio.wait([generation.walker])
                continue
            return

    async def cancel(self) -> None:
        """Stop the current walk and background work, keeping published records."""
        await self._teardown()

    async def close(self) -> None:
        """Tear down all background work owned by this view-model."""
        await self._teardown()
        self._cancel_prefetch()
        self._subscribers.clear()

    async def _teardown(self) -> None:
        generation = self._generation
        if generation is None:
            return
        await generation.aclose()
        # A walk cancelled before it ever ran never reached its own handler.
        if self._state is IndexingState.INDEXING:
            self._finish(generation, IndexingState.CANCELED)

    # Indexing pipeline
    async def _run_indexing(self, generation: Generation, root: str) -> None:
        try:
            async with aclosing(self._indexer.index_photos(root)) as batches:
                async for batch in batches:
                    if generation.cancelled:
                        break
                    self._ingest(generation, batch)
                    await asyncio.sleep(0)
        except asyncio.CancelledError:
            self._finish(generation, IndexingState.CANCELED)
            raise
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.error("Indexing {} failed: {}", root, ex)
            self._finish(generation, IndexingState.FAILED, f"Indexing failed: {ex}")
            return

        final_state = IndexingState.CANCELED if generation.cancelled else IndexingState.INDEXED
        self._finish(generation, final_state)

    def _ingest(self, generation: Generation, batch: list[PhotoRecord]) -> None:
        if not batch:
            return
        ordered = self._sorter.sort(batch, SortMode.FILENAME_ASC)
        self._merged = self._sorter.merge(self._merged, ordered, SortMode.FILENAME_ASC)
        self._unpublished_count += len(batch)

        if not self._published or self._unpublished_count >= self._publish_batch_size:
            self._publish()

        generation.spawn(
            self._index_search_content(generation, list(batch)),
            name=f"search-index-{generation.number}",
            search=True,
        )

    def _publish(self) -> None:
        self._published = self._merged
        self._unpublished_count = 0
        if self._performance.first_paint_seconds is None and self._published and self._start_time:
            self._performance.first_paint_seconds = time.perf_counter() - self._start_time
            logger.info(
                "First paint after {:.3f}s with {} photos",
                self._performance.first_paint_seconds,
                len(self._published),
            )
        self._refresh_views()
        self._update_performance()
        self._notify(LibraryEvent.CATALOG_CHANGED)

    def _finish(
        self, generation: Generation, state: IndexingState, error_message: str | None = None
    ) -> None:
        """Leave the indexing state and finalize the snapshot, once per generation."""
        if generation is not self._generation or self._finalized:
            return
        self._finalized = True
        if generation.poller is not None and generation.poller is not asyncio.current_task():
            generation.poller.cancel()
        if self._unpublished_count:
            self._publish()

        self._state = state
        self._error_message = error_message
        if state is IndexingState.INDEXED and self._start_time is not None:
            self._performance.full_index_seconds = time.perf_counter() - self._start_time
        self._update_performance()
        logger.info(
            "Indexing {} ended as {} with {} photos",
            self._root_path,
            state.value,
            len(self._merged),
        )
        self._notify(LibraryEvent.STATE_CHANGED)
        self._notify(LibraryEvent.PERFORMANCE_UPDATED)

    async def _index_search_content(self, generation: Generation, batch: list[PhotoRecord]) -> None:
        try:
            updates = await asyncio.to_thread(
                self._search.build_entries, batch, self._sidecars, generation.cancel_event.is_set
            )
        except asyncio.CancelledError:
            raise
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.error("Search indexing failed for a batch of {}: {}", len(batch), ex)
            return

        if generation.cancelled or generation is not self._generation:
            return
        added = self._search.apply_background(updates)
        if added and normalize_query(self._search_query):
            self._refresh_views()
            self._notify(LibraryEvent.CATALOG_CHANGED)

    async def _poll_performance(self, generation: Generation) -> None:
        while not generation.cancelled and self._state is IndexingState.INDEXING:
            self._update_performance()
            self._notify(LibraryEvent.PERFORMANCE_UPDATED)
            await asyncio.sleep(self._poll_seconds)

    def _update_performance(self) -> None:
        self._performance.indexed_count = len(self._merged)
        self._performance.thumbnail_stats = self._thumbnails.stats_snapshot()
        self._performance.memory_mb = resident_memory_mb()

    # Derived views
    def _refresh_views(self) -> None:
        query = normalize_query(self._search_query)
        if query:
            filtered = [r for r in self._published if self._search.matches(r.id, query)]
        else:
            filtered = list(self._published)

        if self._sort_mode is SortMode.FILENAME_ASC:
            displayed = filtered
        elif self._sort_mode is SortMode.FILENAME_DESC:
            displayed = filtered[::-1]
        else:
            displayed = self._sorter.sort(filtered, self._sort_mode)

        self._displayed = displayed
        self._groups = self._sorter.group_by_folder(displayed) if self._group_by_folder else []

    # Explicit edits
    def update_search(
        self, record: PhotoRecord, notes: str, tags: list[str], labels: list[PointLabel]
    ) -> None:
        """Refresh the search entry for an edited record immediately."""
        self._search.update(record.id, notes, tags, labels)
        self._refresh_views()
        self._notify(LibraryEvent.CATALOG_CHANGED)

    # Thumbnails
    def prefetch_thumbnails(
        self,
        items: Iterable[PhotoRecord],
        limit: int | None = None,
        size: int | None = None,
    ) -> asyncio.Task | None:
        """Warm the thumbnail cache for the first `limit` items in a worker thread.

        Replaces any prefetch still running.
        """
        self._cancel_prefetch()
        count = self._prefetch_limit if limit is None else max(0, int(limit))
        candidates = list(items)[:count]
        if not candidates:
            return None

        side = size or self._prefetch_size
        cancel = threading.Event()
        generation = self._generation
        thumbnails = self._thumbnails

        def _run() -> None:
            for item in candidates:
                if cancel.is_set() or (generation is not None and generation.cancelled):
                    return
                thumbnails.thumbnail_data(item.image_path, side)

        coro = asyncio.to_thread(_run)
        if generation is not None and not generation.closed:
            task = generation.spawn(coro, name="thumbnail-prefetch")
        else:
            task = asyncio.get_running_loop().create_task(coro, name="thumbnail-prefetch")
        self._prefetch_cancel = cancel
        self._prefetch_task = task
        return task

    def _cancel_prefetch(self) -> None:
        if self._prefetch_cancel is not None:
            self._prefetch_cancel.set()
        if self._prefetch_task is not None and not self._prefetch_task.done():
            self._prefetch_task.cancel()
        self._prefetch_cancel = None
        self._prefetch_task = None
