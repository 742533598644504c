"""Streaming filesystem walk that discovers photos in batches.

The walk runs in a worker thread and hands batches to the event loop through
an `asyncio.Queue`, so the caller's loop stays responsive while large trees are
enumerated. Closing the async iterator stops the walk at the next file.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Iterator
import os
from pathlib import Path
import threading

from loguru import logger

from core.models import PhotoRecord
from core.services.interfaces import IMediaIndexer
from infrastructure.utils import get_modified_datetime

SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png"})
SIDECAR_EXTENSION = ".md"
DEFAULT_BATCH_SIZE = 75

# Directory bundles treated as opaque files rather than folders to descend into.
PACKAGE_SUFFIXES = frozenset(
    {
        ".app",
        ".bundle",
        ".framework",
        ".lrdata",
        ".photolibrary",
        ".photoslibrary",
        ".pkg",
        ".plugin",
        ".xcodeproj",
    }
)

_DONE = object()


def _raise_walk_error(error: OSError) -> None:
    raise error


def _is_skipped_dir(name: str) -> bool:
    return name.startswith(".") or os.path.splitext(name)[1].lower() in PACKAGE_SUFFIXES


def sidecar_path_for(image_path: str) -> str:
    """Same directory and basename as the image, with the sidecar extension."""
    return os.path.splitext(image_path)[0] + SIDECAR_EXTENSION


def make_record(root: Path, image_path: str) -> PhotoRecord:
    """Build a `PhotoRecord` for `image_path` found under `root`."""
    path = Path(image_path)
    try:
        relative = path.relative_to(root).as_posix()
    except ValueError:
        relative = path.name
    return PhotoRecord(
        image_path=str(path),
        sidecar_path=sidecar_path_for(str(path)),
        filename=path.name,
        relative_path=relative,
        modified_at=get_modified_datetime(str(path)),
    )


class FilesystemMediaIndexer(IMediaIndexer):
    """Walks a directory tree for supported images, yielding record batches."""

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        extensions: frozenset[str] = SUPPORTED_EXTENSIONS,
    ) -> None:
        self._batch_size = max(1, int(batch_size))
        self._extensions = frozenset(ext.lower() for ext in extensions)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def iter_batches(self, root: str | Path, stop: threading.Event) -> Iterator[list[PhotoRecord]]:
        """Synchronously walk `root`, yielding batches until done or `stop` is set.

        Raises OSError when enumeration fails, including a missing root.
        """
        root_path = Path(root).expanduser().resolve()
        batch: list[PhotoRecord] = []
        for dirpath, dirnames, filenames in os.walk(root_path, onerror=_raise_walk_error):
            if stop.is_set():
                return
            dirnames[:] = [d for d in dirnames if not _is_skipped_dir(d)]
            for name in filenames:
                if stop.is_set():
                    return
                if name.startswith("."):
                    continue
                if os.path.splitext(name)[1].lower() not in self._extensions:
                    continue
                full_path = os.path.join(dirpath, name)
                if not os.path.isfile(full_path):
                    continue
                batch.append(make_record(root_path, full_path))
                if len(batch) >= self._batch_size:
                    yield batch
                    batch = []

        if batch and not stop.is_set():
            yield batch

    async def index_photos(self, root: str) -> AsyncGenerator[list[PhotoRecord], None]:
        """Stream batches for `root` from a worker thread.

        Use with `contextlib.aclosing` so an early exit stops the worker.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()

        def _emit(item: object) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Loop already closed; nobody is listening any more.
                stop.set()

        def _run() -> None:
            count = 0
            try:
                for batch in self.iter_batches(root, stop):
                    count += len(batch)
                    _emit(batch)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.error("Enumeration failed under {}: {}", root, exc)
                _emit(exc)
            finally:
                logger.info(
                    "Walk of {} finished with {} photos (stopped={})", root, count, stop.is_set()
                )
                _emit(_DONE)

        logger.info("Indexing photos under {}", root)
        worker = loop.run_in_executor(None, _run)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            stop.set()
            await worker
