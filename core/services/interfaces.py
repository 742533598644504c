"""Core service interfaces shared by the view-models and infrastructure.

The view-models depend only on these shapes so tests can substitute
in-memory indexers and repositories for the filesystem-backed ones.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from core.models import PhotoRecord, SidecarDocument, ThumbnailCacheStats


class IMediaIndexer:
    """Produces batches of discovered photos under a root directory."""

    def index_photos(self, root: str) -> AsyncIterator[list[PhotoRecord]]:
        """Return an async iterator of record batches.

        Closing the iterator cancels the walk. Enumeration failures are raised
        from the iterator after any batches that were already delivered.
        """
        raise NotImplementedError


class ISidecarRepository:
    """Reads and writes per-photo annotation documents."""

    def read_document(self, record: PhotoRecord) -> SidecarDocument:
        """Load the sidecar for `record`, returning defaults when it is absent."""
        raise NotImplementedError

    def write_document(self, document: SidecarDocument, record: PhotoRecord) -> None:
        """Persist `document` for `record`, replacing any previous file atomically."""
        raise NotImplementedError


class IThumbnailProvider:
    """Memoizing thumbnail source with hit/miss instrumentation."""

    def thumbnail_data(self, image_path: str, max_pixel_size: int) -> bytes | None:
        """Return encoded thumbnail bytes, or None when decoding fails."""
        raise NotImplementedError

    def stats_snapshot(self) -> ThumbnailCacheStats:
        """Return a consistent copy of the cache counters."""
        raise NotImplementedError

    def reset_stats(self) -> None:
        """Clear counters and cached contents."""
        raise NotImplementedError
