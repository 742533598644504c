"""Sorting, merging and folder grouping for `PhotoRecord` collections.

Every `SortMode` is a total order expressed as a (key, reverse) pair so that
full sorts and incremental merges agree on the exact same order. Filenames and
paths compare naturally and case-insensitively ("IMG_2" < "IMG_10").
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
import math
from pathlib import PurePosixPath
import re
from typing import Any

from core.models import ROOT_GROUP_PATH, FolderGroup, PhotoRecord, SortMode

_DIGITS_RE = re.compile(r"(\d+)")


def natural_sort_key(text: str) -> tuple[Any, ...]:
    """Split `text` into alternating text/number parts for natural ordering.

    The raw string is appended last so distinct strings never compare equal
    (e.g. "img_01" and "img_1").
    """
    parts: list[Any] = []
    for index, part in enumerate(_DIGITS_RE.split(text)):
        # re.split with a capturing group alternates text (even) and digits (odd)
        parts.append(int(part) if index % 2 else part.casefold())
    return (tuple(parts), text)


def filename_sort_key(record: PhotoRecord) -> tuple[Any, ...]:
    """Canonical order: filename, then relative path for equal filenames."""
    return (natural_sort_key(record.filename), natural_sort_key(record.relative_path))


def _timestamp(record: PhotoRecord) -> float:
    if record.modified_at is None:
        return -math.inf
    try:
        return record.modified_at.timestamp()
    except (OverflowError, OSError, ValueError):
        return -math.inf


def _modified_asc_key(record: PhotoRecord) -> tuple[Any, ...]:
    return (_timestamp(record), filename_sort_key(record))


def _modified_desc_key(record: PhotoRecord) -> tuple[Any, ...]:
    # Missing timestamps are the earliest value, so they land last here.
    return (-_timestamp(record), filename_sort_key(record))


_ORDERS: dict[SortMode, tuple[Callable[[PhotoRecord], Any], bool]] = {
    SortMode.FILENAME_ASC: (filename_sort_key, False),
    SortMode.FILENAME_DESC: (filename_sort_key, True),
    SortMode.MODIFIED_ASC: (_modified_asc_key, False),
    SortMode.MODIFIED_DESC: (_modified_desc_key, False),
}


class SortService:
    """Provides sorting, linear merging and grouping for photo records."""

    def sort(self, records: Iterable[PhotoRecord], mode: SortMode) -> list[PhotoRecord]:
        """Return a new list of `records` ordered by `mode`."""
        key, reverse = _ORDERS[mode]
        return sorted(records, key=key, reverse=reverse)

    def precedes(self, lhs: PhotoRecord, rhs: PhotoRecord, mode: SortMode) -> bool:
        """True when `lhs` strictly comes before `rhs` under `mode`."""
        key, reverse = _ORDERS[mode]
        return key(rhs) < key(lhs) if reverse else key(lhs) < key(rhs)

    def merge(
        self,
        lhs: Sequence[PhotoRecord],
        rhs: Sequence[PhotoRecord],
        mode: SortMode = SortMode.FILENAME_ASC,
    ) -> list[PhotoRecord]:
        """Linearly merge two lists already sorted by `mode`.

        Equal elements keep `lhs` first, so the result matches a stable sort of
        the concatenation.
        """
        if not lhs:
            return list(rhs)
        if not rhs:
            return list(lhs)

        key, reverse = _ORDERS[mode]
        merged: list[PhotoRecord] = []
        left = right = 0
        left_key = key(lhs[0])
        right_key = key(rhs[0])
        while True:
            take_right = left_key < right_key if reverse else right_key < left_key
            if take_right:
                merged.append(rhs[right])
                right += 1
                if right == len(rhs):
                    break
                right_key = key(rhs[right])
            else:
                merged.append(lhs[left])
                left += 1
                if left == len(lhs):
                    break
                left_key = key(lhs[left])

        merged.extend(lhs[left:])
        merged.extend(rhs[right:])
        return merged

    def group_by_folder(self, records: Iterable[PhotoRecord]) -> list[FolderGroup]:
        """Partition records by parent folder, keeping their incoming order.

        The project root maps to `ROOT_GROUP_PATH` and always comes first; other
        groups follow in natural path order.
        """
        groups: dict[str, FolderGroup] = {}
        for record in records:
            path = folder_of(record)
            group = groups.get(path)
            if group is None:
                group = groups[path] = FolderGroup(path=path)
            group.items.append(record)

        return sorted(
            groups.values(),
            key=lambda g: (0 if g.is_root else 1, natural_sort_key(g.path)),
        )


def folder_of(record: PhotoRecord) -> str:
    """Parent directory of the record's relative path, or the root sentinel."""
    parent = PurePosixPath(record.relative_path).parent.as_posix()
    if parent in ("", "."):
        return ROOT_GROUP_PATH
    return parent
