from datetime import datetime, timedelta, timezone
import random

from core.models import PhotoRecord, SortMode
from core.services.sort_service import SortService, folder_of, natural_sort_key

BASE_TIME = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _record(name: str, folder: str = "", modified: datetime | None = None) -> PhotoRecord:
    relative = f"{folder}/{name}" if folder else name
    path = f"/photos/{relative}"
    return PhotoRecord(
        image_path=path,
        sidecar_path=path.rsplit(".", 1)[0] + ".md",
        filename=name,
        relative_path=relative,
        modified_at=modified,
    )


def _names(records):
    return [r.filename for r in records]


def _random_records(seed: int, count: int = 60) -> list[PhotoRecord]:
    rng = random.Random(seed)
    folders = ["", "trips", "trips/2019", "Family"]
    stamps = [None] + [BASE_TIME + timedelta(minutes=m) for m in range(8)]
    records = {}
    while len(records) < count:
        name = rng.choice(["IMG_", "img_", "DSC", "photo "]) + str(rng.randint(0, 120))
        name += rng.choice([".jpg", ".JPG", ".png"])
        record = _record(name, rng.choice(folders), rng.choice(stamps))
        records.setdefault(record.relative_path, record)
    return list(records.values())


def test_natural_filename_order():
    sorter = SortService()
    records = [_record("IMG_0100.jpg"), _record("IMG_0002.jpg"), _record("IMG_0010.jpg")]
    ordered = sorter.sort(records, SortMode.FILENAME_ASC)
    assert _names(ordered) == ["IMG_0002.jpg", "IMG_0010.jpg", "IMG_0100.jpg"]


def test_natural_order_ignores_case_and_compares_numbers():
    keys = sorted(["IMG_10.jpg", "img_2.jpg", "Img_1.jpg"], key=natural_sort_key)
    assert keys == ["Img_1.jpg", "img_2.jpg", "IMG_10.jpg"]


def test_natural_key_is_total_for_equal_numbers():
    assert natural_sort_key("img_01") != natural_sort_key("img_1")


def test_equal_filenames_fall_back_to_relative_path():
    sorter = SortService()
    records = [_record("a.jpg", "z"), _record("a.jpg", "b"), _record("a.jpg")]
    ordered = sorter.sort(records, SortMode.FILENAME_ASC)
    assert [r.relative_path for r in ordered] == ["a.jpg", "b/a.jpg", "z/a.jpg"]


def test_filename_desc_is_exact_reverse():
    sorter = SortService()
    records = _random_records(1)
    asc = sorter.sort(records, SortMode.FILENAME_ASC)
    desc = sorter.sort(records, SortMode.FILENAME_DESC)
    assert desc == asc[::-1]


def test_modified_orders_put_missing_dates_first_then_last():
    sorter = SortService()
    records = [
        _record("b.jpg", modified=BASE_TIME),
        _record("a.jpg", modified=None),
        _record("c.jpg", modified=BASE_TIME + timedelta(hours=1)),
        _record("d.jpg", modified=BASE_TIME),
    ]
    assert _names(sorter.sort(records, SortMode.MODIFIED_ASC)) == [
        "a.jpg",
        "b.jpg",
        "d.jpg",
        "c.jpg",
    ]
    assert _names(sorter.sort(records, SortMode.MODIFIED_DESC)) == [
        "c.jpg",
        "b.jpg",
        "d.jpg",
        "a.jpg",
    ]


def test_merge_matches_full_sort_for_every_mode():
    sorter = SortService()
    for seed in range(5):
        records = _random_records(seed)
        rng = random.Random(seed)
        for mode in SortMode:
            merged: list[PhotoRecord] = []
            remaining = list(records)
            while remaining:
                size = rng.randint(1, 9)
                batch, remaining = remaining[:size], remaining[size:]
                merged = sorter.merge(merged, sorter.sort(batch, mode), mode)
            assert merged == sorter.sort(records, mode), mode


def test_merge_with_empty_sides():
    sorter = SortService()
    records = [_record("a.jpg"), _record("b.jpg")]
    assert sorter.merge([], records) == records
    assert sorter.merge(records, []) == records


def test_toggling_preserves_membership():
    sorter = SortService()
    records = _random_records(7)
    for mode in SortMode:
        once = sorter.sort(records, mode.toggled())
        twice = sorter.sort(once, mode.toggled().toggled())
        assert sorted(r.id for r in once) == sorted(r.id for r in records)
        assert twice == sorter.sort(records, mode)


def test_precedes_follows_mode_direction():
    sorter = SortService()
    a, b = _record("a.jpg"), _record("b.jpg")
    assert sorter.precedes(a, b, SortMode.FILENAME_ASC)
    assert sorter.precedes(b, a, SortMode.FILENAME_DESC)
    assert not sorter.precedes(a, a, SortMode.FILENAME_ASC)


def test_group_by_folder_puts_root_first_and_keeps_item_order():
    sorter = SortService()
    records = sorter.sort(
        [
            _record("c.jpg", "trips/10"),
            _record("b.jpg"),
            _record("a.jpg", "trips/9"),
            _record("d.jpg", "Family"),
            _record("a.jpg"),
            _record("e.jpg", "trips/9"),
        ],
        SortMode.FILENAME_DESC,
    )
    groups = sorter.group_by_folder(records)
    assert [g.path for g in groups] == ["/", "Family", "trips/9", "trips/10"]
    assert _names(groups[0].items) == ["b.jpg", "a.jpg"]
    assert _names(groups[2].items) == ["e.jpg", "a.jpg"]


def test_folder_of_root_record():
    assert folder_of(_record("a.jpg")) == "/"
    assert folder_of(_record("a.jpg", "x/y")) == "x/y"
