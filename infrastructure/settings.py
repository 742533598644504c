"""Settings access helpers for JSON-based configuration."""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

from loguru import logger

DEFAULT_SETTINGS: dict[str, Any] = {
    "indexing": {"batch_size": 75},
    "library": {
        "publish_batch_size": 25,
        "performance_poll_seconds": 0.5,
        "group_by_folder": True,
    },
    "thumbnails": {
        "count_limit": 900,
        "cost_limit_mb": 256,
        "prefetch_limit": 72,
        "prefetch_size": 360,
    },
    "annotations": {"autosave_delay_seconds": 0.6},
    "logging": {"dir": None, "level": "INFO"},
    "projects": {"last_root": None},
}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


class JsonSettings:
    """JSON settings with dotted-key access layered over built-in defaults.

    A missing file is not an error; defaults apply until `save()` creates it.
    """

    def __init__(self, settings_path: str | Path | None = None) -> None:
        self._path = Path(settings_path) if settings_path is not None else None
        self._data: dict[str, Any] = copy.deepcopy(DEFAULT_SETTINGS)
        if self._path is not None and self._path.exists():
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    loaded = json.load(f)
            except (OSError, ValueError) as ex:
                logger.warning("Ignoring unreadable settings {}: {}", self._path, ex)
            else:
                if isinstance(loaded, dict):
                    _merge(self._data, loaded)
                else:
                    logger.warning("Ignoring settings {}: top level is not an object", self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    def get(self, key: str, default: Any | None = None) -> Any:
        """Return value for dotted `key`, or `default` if not present."""
        node: Any = self._data
        for part in key.split("."):
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return default if node is None else node

    def set(self, key: str, value: Any) -> None:
        """Set dotted `key`, creating intermediate objects as needed."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = value

    def save(self) -> None:
        """Write settings back to their file; raises OSError on failure."""
        if self._path is None:
            raise OSError("No settings path configured")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2)
            f.write("\n")
