"""Utilities for filesystem timestamps, ISO-8601 formatting and process memory.

Helpers here are best-effort and do not raise; callers should expect `None`
when a value is not available on the current platform.
"""

from __future__ import annotations

from datetime import datetime, timezone
import os

from loguru import logger
import psutil

ISO_UTC_FMT = "%Y-%m-%dT%H:%M:%SZ"


def format_iso8601_utc(dt: datetime | None = None) -> str:
    """Format `dt` (default: now) as an ISO-8601 UTC timestamp like `2024-05-01T10:00:00Z`."""
    moment = dt or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(ISO_UTC_FMT)


def get_modified_datetime(path: str) -> datetime | None:
    """Best-effort filesystem modification time as an aware UTC datetime."""
    try:
        ts = os.path.getmtime(path)
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OSError, OverflowError, ValueError) as ex:
        logger.debug("getmtime failed for {}: {}", path, ex)
        return None


def resident_memory_mb() -> float | None:
    """Resident set size of the current process in MiB, or None if unavailable."""
    try:
        rss = psutil.Process(os.getpid()).memory_info().rss
    except (psutil.Error, OSError) as ex:
        logger.debug("Resident memory unavailable: {}", ex)
        return None
    return rss / 1_048_576.0
