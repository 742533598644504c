import asyncio
from contextlib import aclosing
from pathlib import Path
import threading

import pytest

from infrastructure.media_indexer import FilesystemMediaIndexer, sidecar_path_for

EXPECTED = {"a.jpg", "B.JPG", "c.png", "sub/e.jpeg", "sub/deeper/g.jpg"}


def _touch(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")


@pytest.fixture()
def photo_tree(tmp_path):
    for relative in [
        "a.jpg",
        "B.JPG",
        "c.png",
        "d.txt",
        "notes.md",
        ".hidden.jpg",
        ".git/x.jpg",
        "sub/e.jpeg",
        "sub/deeper/g.jpg",
        "Library.photoslibrary/f.jpg",
        "App.app/icon.png",
    ]:
        _touch(tmp_path / relative)
    return tmp_path


def _collect(indexer, root):
    async def scenario():
        batches = []
        async with aclosing(indexer.index_photos(str(root))) as stream:
            async for batch in stream:
                batches.append(batch)
        return batches

    return asyncio.run(scenario())


def test_walk_is_complete_for_any_batch_size(photo_tree):
    for batch_size in (1, 2, 3, 100):
        indexer = FilesystemMediaIndexer(batch_size=batch_size)
        batches = list(indexer.iter_batches(photo_tree, threading.Event()))
        relative = [record.relative_path for batch in batches for record in batch]
        assert sorted(relative) == sorted(EXPECTED)
        assert all(0 < len(batch) <= batch_size for batch in batches)


def test_async_stream_yields_every_photo(photo_tree):
    batches = _collect(FilesystemMediaIndexer(batch_size=2), photo_tree)
    relative = {record.relative_path for batch in batches for record in batch}
    assert relative == EXPECTED


def test_records_carry_paths_and_mtime(photo_tree):
    batches = _collect(FilesystemMediaIndexer(), photo_tree)
    records = {record.relative_path: record for batch in batches for record in batch}
    record = records["sub/e.jpeg"]
    assert record.filename == "e.jpeg"
    assert record.image_path.endswith("e.jpeg")
    assert record.sidecar_path == record.image_path[: -len(".jpeg")] + ".md"
    assert record.modified_at is not None


def test_missing_root_raises(tmp_path):
    indexer = FilesystemMediaIndexer()
    with pytest.raises(OSError):
        list(indexer.iter_batches(tmp_path / "missing", threading.Event()))
    with pytest.raises(OSError):
        _collect(indexer, tmp_path / "missing")


def test_stop_event_ends_the_walk(photo_tree):
    indexer = FilesystemMediaIndexer(batch_size=1)
    stop = threading.Event()
    seen = []
    for batch in indexer.iter_batches(photo_tree, stop):
        seen.append(batch)
        stop.set()
    assert len(seen) == 1


def test_closing_the_stream_early_returns(photo_tree):
    indexer = FilesystemMediaIndexer(batch_size=1)

    async def scenario():
        async with aclosing(indexer.index_photos(str(photo_tree))) as stream:
            async for batch in stream:
                return batch
        return None

    first = asyncio.run(scenario())
    assert len(first) == 1


def test_sidecar_path_for():
    assert sidecar_path_for("/x/IMG_1.JPG") == "/x/IMG_1.md"
    assert sidecar_path_for("/x/archive.v2.png") == "/x/archive.v2.md"
