"""Thumbnail decoding and in-memory caching.

Thumbnails are decoded with Pillow, bounded to the requested pixel size,
center-cropped to a square so grid tiles are always filled, and encoded as PNG.
Results are memoized per (path, size) in an LRU bounded by entry count and
total byte cost.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
import io
import threading

from PIL import Image, ImageOps
from loguru import logger

from core.models import ThumbnailCacheStats
from core.services.interfaces import IThumbnailProvider

DEFAULT_COUNT_LIMIT = 900
DEFAULT_COST_LIMIT_BYTES = 256 * 1_048_576


def cache_key(path: str, max_pixel_size: int) -> str:
    return f"{path}#{int(max_pixel_size)}"


@dataclass
class _MemCacheItem:
    key: str
    data: bytes


class _LRUCache:
    """Recency-ordered cache bounded by entry count and total byte cost.

    Not thread-safe; `ThumbnailService` serializes access.
    """

    def __init__(self, count_limit: int, cost_limit: int) -> None:
        self._count_limit = max(1, int(count_limit or 1))
        self._cost_limit = max(1, int(cost_limit or 1))
        self._data: OrderedDict[str, _MemCacheItem] = OrderedDict()
        self._total_cost = 0

    def get(self, key: str) -> bytes | None:
        """Return cached bytes for key, moving it to the MRU position."""
        item = self._data.get(key)
        if item is None:
            return None
        self._data.move_to_end(key)
        return item.data

    def put(self, key: str, data: bytes) -> None:
        """Insert or update `key`, evicting LRU entries while over either limit."""
        previous = self._data.pop(key, None)
        if previous is not None:
            self._total_cost -= len(previous.data)
        self._data[key] = _MemCacheItem(key, data)
        self._total_cost += len(data)
        while self._data and (
            len(self._data) > self._count_limit or self._total_cost > self._cost_limit
        ):
            _, evicted = self._data.popitem(last=False)
            self._total_cost -= len(evicted.data)

    def clear(self) -> None:
        self._data.clear()
        self._total_cost = 0

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    @property
    def total_cost(self) -> int:
        return self._total_cost


def _center_crop_square(image: Image.Image) -> Image.Image:
    side = min(image.width, image.height)
    if side <= 0:
        return image
    left = (image.width - side) // 2
    top = (image.height - side) // 2
    return image.crop((left, top, left + side, top + side))


def generate_thumbnail_data(path: str, max_pixel_size: int) -> bytes | None:
    """Decode `path` into square PNG bytes no larger than `max_pixel_size`.

    Returns None when the file cannot be decoded.
    """
    try:
        with Image.open(path) as im:
            im = ImageOps.exif_transpose(im)
            if im.mode not in ("RGB", "RGBA"):
                im = im.convert("RGBA" if "A" in im.getbands() else "RGB")
            if max_pixel_size and max_pixel_size > 0:
                im.thumbnail((max_pixel_size, max_pixel_size), Image.Resampling.LANCZOS)
            im = _center_crop_square(im)
            buffer = io.BytesIO()
            im.save(buffer, "PNG")
            return buffer.getvalue()
    except (OSError, ValueError, Image.DecompressionBombError) as ex:
        logger.debug("Thumbnail decode failed for {}: {}", path, ex)
        return None


class ThumbnailService(IThumbnailProvider):
    """Memoizing thumbnail source with request/hit/miss counters."""

    def __init__(
        self,
        count_limit: int = DEFAULT_COUNT_LIMIT,
        cost_limit_bytes: int = DEFAULT_COST_LIMIT_BYTES,
        settings: object | None = None,
    ) -> None:
        if settings is not None:
            try:
                count_limit = int(settings.get("thumbnails.count_limit", count_limit))
                cost_limit_bytes = int(
                    float(settings.get("thumbnails.cost_limit_mb", cost_limit_bytes / 1_048_576))
                    * 1_048_576
                )
            except (ValueError, TypeError):
                logger.warning("Invalid thumbnail cache settings; using defaults")
        self._lock = threading.Lock()
        self._cache = _LRUCache(count_limit, cost_limit_bytes)
        self._requests = 0
        self._hits = 0
        self._misses = 0
        self._tracked_keys: set[str] = set()

    def thumbnail_data(self, image_path: str, max_pixel_size: int) -> bytes | None:
        """Return cached or freshly generated thumbnail bytes for `image_path`."""
        key = cache_key(image_path, max_pixel_size)
        with self._lock:
            self._requests += 1
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        data = generate_thumbnail_data(image_path, max_pixel_size)
        if data is None:
            return None

        with self._lock:
            self._cache.put(key, data)
            self._tracked_keys.add(key)
        return data

    def stats_snapshot(self) -> ThumbnailCacheStats:
        with self._lock:
            return ThumbnailCacheStats(
                requests=self._requests,
                hits=self._hits,
                misses=self._misses,
                tracked_entries=len(self._tracked_keys),
            )

    def reset_stats(self) -> None:
        """Clear counters, tracked keys and cached thumbnails together."""
        with self._lock:
            self._requests = 0
            self._hits = 0
            self._misses = 0
            self._tracked_keys.clear()
            self._cache.clear()

    @property
    def cached_count(self) -> int:
        with self._lock:
            return len(self._cache)
