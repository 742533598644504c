import os

import pytest

from core.models import PhotoRecord, PointLabel, SidecarDocument
from infrastructure import sidecar_repository
from infrastructure.sidecar_repository import (
    MALFORMED_FRONT_MATTER_WARNING,
    SidecarRepository,
    parse_document,
    parse_labels,
    parse_tags,
    remove_managed_blocks,
    render_document,
)


def _record(tmp_path, name: str = "IMG_0001") -> PhotoRecord:
    image = tmp_path / f"{name}.jpg"
    return PhotoRecord(
        image_path=str(image),
        sidecar_path=str(tmp_path / f"{name}.md"),
        filename=image.name,
        relative_path=image.name,
    )


def test_missing_sidecar_yields_default_document(tmp_path):
    document = SidecarRepository().read_document(_record(tmp_path))
    assert document.front_matter_lines == ["photo: IMG_0001.jpg"]
    assert not document.had_front_matter
    assert document.notes_markdown == ""
    assert document.tags == []
    assert document.labels == []
    assert document.parse_warning is None


def test_legacy_plain_markdown_becomes_notes():
    raw = "# Trip\n\nJust notes, no front matter.\n"
    document = parse_document(raw, "a.jpg")
    assert document.notes_markdown == raw
    assert not document.had_front_matter
    assert document.parse_warning is None


def test_unclosed_front_matter_sets_warning():
    raw = "---\nphoto: a.jpg\ntags: [x]\nnotes without closing"
    document = parse_document(raw, "a.jpg")
    assert document.parse_warning == MALFORMED_FRONT_MATTER_WARNING
    assert document.notes_markdown == raw
    assert document.tags == []


def test_body_drops_one_leading_newline_only():
    document = parse_document("---\nphoto: a.jpg\n---\n\n\nBody\n", "a.jpg")
    assert document.had_front_matter
    assert document.notes_markdown == "\nBody\n"


def test_crlf_sidecar_parses():
    raw = "---\r\nphoto: a.jpg\r\ntags:\r\n  - \"x\"\r\n---\r\n\r\nHello"
    document = parse_document(raw, "a.jpg")
    assert document.tags == ["x"]
    assert document.notes_markdown == "Hello"


def test_inline_tags():
    assert parse_tags(['tags: [a, "b c", "", d ]']) == ["a", "b c", "d"]


def test_block_tags_keep_file_order():
    lines = ["photo: a.jpg", "tags:", '  - "b"', '  - "a"', "updated_at: x"]
    assert parse_tags(lines) == ["b", "a"]


def test_labels_drop_invalid_entries_and_clamp():
    lines = [
        "labels:",
        "  - id: lbl-good",
        "    x: 1.5",
        "    y: -0.25",
        '    text: "Dad"',
        "  - id: lbl-no-x",
        "    y: 0.5",
        '    text: "missing x"',
        "  - id: lbl-blank",
        "    x: 0.5",
        "    y: 0.5",
        '    text: "  "',
        "  - id: lbl-nan",
        "    x: nan",
        "    y: 0.5",
        '    text: "not finite"',
        "  - x: 0.2",
        "    y: 0.3",
        "    text: Mum",
        "other: value",
    ]
    labels = parse_labels(lines)
    assert [label.text for label in labels] == ["Dad", "Mum"]
    assert (labels[0].id, labels[0].x, labels[0].y) == ("lbl-good", 1.0, 0.0)
    assert labels[1].id.startswith("lbl-")


def test_remove_managed_blocks_keeps_unknown_keys():
    lines = [
        "photo: a.jpg",
        "camera: X100",
        "  lens: 23mm",
        "tags:",
        '  - "x"',
        "rating: 4",
        "updated_at: 2024-01-01T00:00:00Z",
        "",
    ]
    assert remove_managed_blocks(lines) == ["camera: X100", "  lens: 23mm", "rating: 4"]


def test_render_layout():
    document = SidecarDocument(
        front_matter_lines=["photo: old.jpg", "camera: X100"],
        notes_markdown="Notes here\n",
        tags=["b", "a"],
        labels=[PointLabel(id="lbl-1", x=0.25, y=0.5, text='say "hi"')],
    )
    rendered = render_document(document, "a.jpg", "2024-05-01T10:00:00Z")
    assert rendered == (
        "---\n"
        "camera: X100\n"
        "photo: a.jpg\n"
        "tags:\n"
        '  - "b"\n'
        '  - "a"\n'
        "labels:\n"
        "  - id: lbl-1\n"
        "    x: 0.250000\n"
        "    y: 0.500000\n"
        '    text: "say \\"hi\\""\n'
        "updated_at: 2024-05-01T10:00:00Z\n"
        "---\n"
        "\n"
        "Notes here\n"
    )


def test_render_omits_empty_blocks():
    rendered = render_document(SidecarDocument(), "a.jpg", "2024-05-01T10:00:00Z")
    assert "tags:" not in rendered
    assert "labels:" not in rendered
    assert rendered.startswith("---\nphoto: a.jpg\nupdated_at: 2024-05-01T10:00:00Z\n---\n\n")


def test_round_trip_preserves_content_and_unknown_keys(tmp_path):
    repo = SidecarRepository()
    record = _record(tmp_path)
    labels = [
        PointLabel(id="lbl-1", x=0.25, y=0.75, text='He said "cheese"'),
        PointLabel(id="lbl-2", x=0.0, y=1.0, text="Corner"),
    ]
    document = SidecarDocument(
        front_matter_lines=["photo: IMG_0001.jpg", "camera: X100", "  lens: 23mm"],
        notes_markdown="# Day one\n\nSunny.\n",
        tags=["b", "a"],
        labels=labels,
    )
    repo.write_document(document, record)

    loaded = repo.read_document(record)
    assert loaded.had_front_matter
    assert loaded.notes_markdown == document.notes_markdown
    assert loaded.tags == ["b", "a"]
    assert loaded.labels == labels
    assert "camera: X100" in loaded.front_matter_lines
    assert "  lens: 23mm" in loaded.front_matter_lines
    assert any(line.startswith("updated_at: ") for line in loaded.front_matter_lines)

    # Writing the loaded document again keeps a single copy of every block.
    repo.write_document(loaded, record)
    text = (tmp_path / "IMG_0001.md").read_text(encoding="utf-8")
    assert text.count("photo: ") == 1
    assert text.count("updated_at: ") == 1
    assert text.count("camera: X100") == 1


def test_label_text_with_line_breaks_stays_inside_front_matter(tmp_path):
    repo = SidecarRepository()
    record = _record(tmp_path)
    document = SidecarDocument(
        notes_markdown="My notes\n",
        tags=["trip\n---\nrating: 5"],
        labels=[PointLabel(id="lbl-1", x=0.5, y=0.5, text="Dad\n---\nfoo: bar")],
    )
    repo.write_document(document, record)

    text = (tmp_path / "IMG_0001.md").read_text(encoding="utf-8")
    assert text.count("---\n") == 2
    assert '    text: "Dad\\n---\\nfoo: bar"\n' in text
    assert '  - "trip --- rating: 5"\n' in text

    loaded = repo.read_document(record)
    assert loaded.notes_markdown == "My notes\n"
    assert loaded.parse_warning is None
    assert [(label.id, label.text) for label in loaded.labels] == [("lbl-1", "Dad --- foo: bar")]
    assert loaded.tags == ["trip --- rating: 5"]
    assert not any(line.startswith(("foo:", "rating:")) for line in loaded.front_matter_lines)


def test_backslashes_and_quotes_round_trip(tmp_path):
    repo = SidecarRepository()
    record = _record(tmp_path)
    labels = [PointLabel(id="lbl-1", x=0.1, y=0.2, text='C:\\new "folder"\\')]
    repo.write_document(SidecarDocument(tags=["a\\b"], labels=labels), record)

    loaded = repo.read_document(record)
    assert loaded.labels == labels
    assert loaded.tags == ["a\\b"]


def test_parsed_label_text_is_trimmed_and_collapsed():
    lines = [
        "labels:",
        "  - id: lbl-1",
        "    x: 0.5",
        "    y: 0.5",
        '    text: "  Dad \\n  and  Mum "',
    ]
    assert parse_labels(lines) == [PointLabel(id="lbl-1", x=0.5, y=0.5, text="Dad and Mum")]


def test_write_leaves_no_temporary_file(tmp_path):
    record = _record(tmp_path)
    SidecarRepository().write_document(SidecarDocument(notes_markdown="x"), record)
    assert (tmp_path / "IMG_0001.md").exists()
    assert not (tmp_path / ".IMG_0001.md.tmp").exists()


def test_failed_replace_keeps_original_and_cleans_up(tmp_path, monkeypatch):
    record = _record(tmp_path)
    sidecar = tmp_path / "IMG_0001.md"
    sidecar.write_text("original", encoding="utf-8")

    def _fail(src, dst):
        raise OSError("replace failed")

    monkeypatch.setattr(sidecar_repository.os, "replace", _fail)
    with pytest.raises(OSError):
        SidecarRepository().write_document(SidecarDocument(notes_markdown="new"), record)

    assert sidecar.read_text(encoding="utf-8") == "original"
    assert not (tmp_path / ".IMG_0001.md.tmp").exists()


def test_write_into_missing_directory_raises(tmp_path):
    record = _record(tmp_path / "gone")
    with pytest.raises(OSError):
        SidecarRepository().write_document(SidecarDocument(), record)
    assert not os.path.exists(tmp_path / "gone")
