from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys

from loguru import logger

from app.viewmodels.library_vm import LibraryVM
from core.models import IndexingState, PerformanceSnapshot, SortMode
from infrastructure.logging import init_logging
from infrastructure.settings import JsonSettings

BASE_DIR = Path(__file__).parent


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photo-notebook",
        description="Index a photo folder and list its photos, optionally filtered by notes.",
    )
    parser.add_argument("root", nargs="?", help="project folder (defaults to the last one opened)")
    parser.add_argument("--query", default="", help="filter by notes, tags and label text")
    parser.add_argument(
        "--sort",
        choices=[mode.value for mode in SortMode],
        default=SortMode.FILENAME_ASC.value,
        help="display order",
    )
    parser.add_argument("--flat", action="store_true", help="do not group photos by folder")
    parser.add_argument(
        "--settings", default=str(BASE_DIR / "settings.json"), help="settings JSON file"
    )
    return parser


def _format_performance(snapshot: PerformanceSnapshot) -> str:
    def _seconds(value: float | None) -> str:
        return "-" if value is None else f"{value:.3f}s"

    memory = "-" if snapshot.memory_mb is None else f"{snapshot.memory_mb:.1f} MB"
    stats = snapshot.thumbnail_stats
    return (
        f"first paint {_seconds(snapshot.first_paint_seconds)}, "
        f"full index {_seconds(snapshot.full_index_seconds)}, "
        f"{snapshot.indexed_count} photos, memory {memory}, "
        f"thumbnails {stats.hits}/{stats.requests} hits"
    )


def _print_catalog(vm: LibraryVM) -> None:
    if vm.group_by_folder:
        for group in vm.displayed_groups:
            print(f"{group.path}/" if not group.is_root else "/")
            for record in group.items:
                print(f"  {record.filename}")
    else:
        for record in vm.displayed_items:
            print(record.relative_path)


async def _run(vm: LibraryVM, root: str, query: str, sort_mode: SortMode) -> int:
    vm.sort_mode = sort_mode
    try:
        await vm.load_project(root)
        await vm.wait_until_indexed()
        await vm.wait_for_search_index()
        vm.search_query = query

        _print_catalog(vm)
        logger.info("Performance: {}", _format_performance(vm.performance))
        if vm.state is IndexingState.FAILED:
            print(vm.indexing_error_message, file=sys.stderr)
            return 1
        return 0
    finally:
        await vm.close()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = JsonSettings(args.settings)
    init_logging(
        settings.get("logging.dir"), level=str(settings.get("logging.level", "INFO")), console=True
    )

    root = args.root or settings.get("projects.last_root")
    if not root:
        logger.error("No project folder given and none remembered in {}", args.settings)
        return 2

    vm = LibraryVM.from_settings(settings)
    if args.flat:
        vm.group_by_folder = False

    code = asyncio.run(_run(vm, str(root), args.query, SortMode(args.sort)))
    if code == 0:
        settings.set("projects.last_root", str(Path(root).expanduser().resolve()))
        try:
            settings.save()
        except OSError as ex:
            logger.warning("Could not remember project folder: {}", ex)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
