"""Tests for packaging analysed items into archives and folders."""

import zipfile
from datetime import date
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest

import photo_renamer.export as m
from photo_renamer.errors import ExportError, InvalidTransitionError
from photo_renamer.models import BatchSettings, ImageAnalysis, ImageItem, MediaType
from photo_renamer.naming import build_file_name, resolve_unique

TODAY = date(2024, 5, 1)


def _done_item(name: str, file_name: str = "IMG.JPG", data: bytes = b"img") -> ImageItem:
    item = ImageItem(original_file_name=file_name, data=data, media_type=MediaType.JPEG)
    item.begin_processing()
    item.complete(ImageAnalysis(descriptive_name=name, title=name.title(), keywords=["k"]))
    return item


def _pending_item() -> ImageItem:
    return ImageItem(original_file_name="p.jpg", data=b"p", media_type=MediaType.JPEG)


def _zip_names(data: bytes) -> list[str]:
    with zipfile.ZipFile(BytesIO(data)) as archive:
        return archive.namelist()


def test_export_batch_resolves_collisions_within_pass() -> None:
    """Two items that both want 'sunset' get sunset.jpg and sunset-2.jpg with matching sidecars."""
    first = _done_item("sunset", data=b"first")
    second = _done_item("sunset", data=b"second")

    archive = m.export_batch([first, second], BatchSettings(), today=TODAY)

    assert archive.file_name == "image-export-2024-05-01.zip"
    assert _zip_names(archive.data) == ["sunset.jpg", "sunset.md", "sunset-2.jpg", "sunset-2.md"]
    with zipfile.ZipFile(BytesIO(archive.data)) as bundle:
        assert bundle.read("sunset-2.jpg") == b"second"
        assert bundle.read("sunset-2.md").decode().startswith("# sunset-2.jpg\n")
    assert first.final_file_name == "sunset.jpg"
    assert second.final_file_name == "sunset-2.jpg"
    assert first.exported
    assert second.exported


def test_export_batch_applies_naming_settings() -> None:
    """Prefix, suffix and separator from the settings shape the final name."""
    item = _done_item("red-fox-in-snow", file_name="fox.JPG")
    settings = BatchSettings(prefix="blog", suffix="hero", separator="-")

    archive = m.export_batch([item], settings, today=TODAY)

    assert archive.entries[0].image_name == "blog-red-fox-in-snow-hero.jpg"
    assert archive.entries[0].sidecar_name == "blog-red-fox-in-snow-hero.md"


def test_export_batch_final_name_matches_naming_functions() -> None:
    """The exported name is what build_file_name + resolve_unique give for the same inputs."""
    settings = BatchSettings(prefix="p", separator="_")
    items = [_done_item("cat"), _done_item("dog"), _done_item("cat")]

    m.export_batch(items, settings, today=TODAY)

    used: set[str] = set()
    for item in items:
        assert item.analysis is not None
        candidate = build_file_name("p", item.analysis.descriptive_name, "", "_", ".jpg")
        expected = resolve_unique(candidate, used.__contains__)
        used.add(expected)
        assert item.final_file_name == expected


def test_export_batch_skips_items_without_analysis() -> None:
    """Pending and failed items are left out and left untouched."""
    pending = _pending_item()
    failed = _pending_item()
    failed.begin_processing()
    failed.fail("timeout")
    done = _done_item("ok")

    archive = m.export_batch([pending, done, failed], BatchSettings(), today=TODAY)

    assert [entry.item_id for entry in archive.entries] == [done.id]
    assert pending.exported is False
    assert failed.exported is False
    assert failed.final_file_name is None


def test_export_batch_keeps_sidecars_distinct_across_extensions() -> None:
    """Same base name with different extensions never shares one .md file."""
    jpg = _done_item("logo", file_name="a.jpg")
    png = ImageItem(original_file_name="b.png", data=b"png", media_type=MediaType.PNG)
    png.begin_processing()
    png.complete(ImageAnalysis(descriptive_name="logo"))

    archive = m.export_batch([jpg, png], BatchSettings(), today=TODAY)

    assert _zip_names(archive.data) == ["logo.jpg", "logo.md", "logo-2.png", "logo-2.md"]


def test_export_batch_failure_marks_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failure while building the archive leaves every item unexported."""
    items = [_done_item("a"), _done_item("b")]

    def broken_format(*_args: Any, **_kwargs: Any) -> str:
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(m, "format_metadata", broken_format)

    with pytest.raises(ExportError, match="disk full"):
        m.export_batch(items, BatchSettings(), today=TODAY)
    assert not any(item.exported for item in items)


def test_item_extension_falls_back_to_media_type() -> None:
    """Files without an extension use the media type's default one."""
    item = ImageItem(original_file_name="upload", data=b"x", media_type=MediaType.WEBP)
    assert m.item_extension(item) == ".webp"


def test_archive_write_to_creates_folder(tmp_path: Path) -> None:
    """The archive file lands in the requested folder under its own name."""
    archive = m.export_batch([_done_item("a")], BatchSettings(), today=TODAY)
    target = archive.write_to(tmp_path / "out")
    assert target == tmp_path / "out" / "image-export-2024-05-01.zip"
    assert target.read_bytes() == archive.data


def test_export_to_directory_resolves_against_existing_files(tmp_path: Path) -> None:
    """Existing files in the destination push the new name to the next free counter."""
    (tmp_path / "sunset.jpg").write_bytes(b"old")
    item = _done_item("sunset", data=b"new")

    final_name = m.export_to_directory(item, tmp_path, BatchSettings(), today=TODAY)

    assert final_name == "sunset-2.jpg"
    assert (tmp_path / "sunset.jpg").read_bytes() == b"old"
    assert (tmp_path / "sunset-2.jpg").read_bytes() == b"new"
    assert (tmp_path / "sunset-2.md").read_text(encoding="utf-8").startswith("# sunset-2.jpg\n")
    assert item.exported
    assert item.final_file_name == "sunset-2.jpg"


def test_export_to_directory_avoids_existing_sidecar(tmp_path: Path) -> None:
    """A stray sidecar with the same base name is not overwritten."""
    (tmp_path / "sunset.md").write_text("notes", encoding="utf-8")
    item = _done_item("sunset")

    assert m.export_to_directory(item, tmp_path, BatchSettings(), today=TODAY) == "sunset-2.jpg"
    assert (tmp_path / "sunset.md").read_text(encoding="utf-8") == "notes"


def test_export_to_directory_copies_source_file(tmp_path: Path) -> None:
    """Items loaded from disk are copied from their source path."""
    source = tmp_path / "src" / "IMG_1.JPG"
    source.parent.mkdir()
    source.write_bytes(b"from-disk")
    item = ImageItem(
        original_file_name="IMG_1.JPG",
        data=b"in-memory",
        media_type=MediaType.JPEG,
        source_path=source,
    )
    item.begin_processing()
    item.complete(ImageAnalysis(descriptive_name="copy"))

    dest = tmp_path / "dest"
    m.export_to_directory(item, dest, BatchSettings(), today=TODAY)

    assert (dest / "copy.jpg").read_bytes() == b"from-disk"


def test_export_to_directory_rejects_unfinished_items(tmp_path: Path) -> None:
    """Only done items can be exported."""
    with pytest.raises(InvalidTransitionError):
        m.export_to_directory(_pending_item(), tmp_path, BatchSettings())


def test_export_to_directory_io_failure_keeps_item_unexported(tmp_path: Path) -> None:
    """A missing source file surfaces as ExportError and the item stays unexported."""
    item = ImageItem(
        original_file_name="gone.jpg",
        data=b"x",
        media_type=MediaType.JPEG,
        source_path=tmp_path / "gone.jpg",
    )
    item.begin_processing()
    item.complete(ImageAnalysis(descriptive_name="gone"))

    with pytest.raises(ExportError, match=r"gone\.jpg"):
        m.export_to_directory(item, tmp_path / "dest", BatchSettings())
    assert item.exported is False


class _FakeExifTool:
    calls: list[dict[str, Any]] = []

    def __enter__(self) -> "_FakeExifTool":
        return self

    def __exit__(self, *_exc: object) -> None:
        return None

    def set_tags(self, *, files: list[str], tags: dict[str, Any], params: list[str]) -> None:
        self.calls.append({"files": files, "tags": tags, "params": params})


def test_export_to_directory_embeds_metadata(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """With embedding on, ExifTool is asked to write title and keywords into the copy."""
    _FakeExifTool.calls = []
    monkeypatch.setattr(m, "ExifToolHelper", _FakeExifTool)
    item = _done_item("fox")

    m.export_to_directory(item, tmp_path, BatchSettings(), today=TODAY, embed=True)

    assert len(_FakeExifTool.calls) == 1
    call = _FakeExifTool.calls[0]
    assert call["files"] == [str(tmp_path / "fox.jpg")]
    assert call["tags"]["XMP-dc:Title"] == "Fox"
    assert call["tags"]["IPTC:Keywords"] == ["k"]
    assert call["params"] == ["-overwrite_original"]


def test_build_embedded_tags_maps_location() -> None:
    """Location fields are mirrored into XMP and IPTC tags."""
    tags = m.build_embedded_tags(
        ImageAnalysis(
            descriptive_name="x",
            alt_text="alt",
            location_name="Old Town",
            state_province="Bavaria",
            country="Germany",
        ),
    )
    assert tags["XMP-iptcCore:AltTextAccessibility"] == "alt"
    assert tags["IPTC:Sub-location"] == "Old Town"
    assert tags["XMP-photoshop:State"] == "Bavaria"
    assert tags["IPTC:Country-PrimaryLocationName"] == "Germany"
    assert "XMP-dc:Title" not in tags


def _edited_item(name: str) -> ImageItem:
    item = _done_item("placeholder")
    assert item.analysis is not None
    item.analysis.descriptive_name = name
    return item


@pytest.mark.parametrize("name", ["../escaped", "sub/dir", "back\\slash", ".hidden"])
def test_export_to_directory_refuses_names_outside_destination(
    tmp_path: Path,
    name: str,
) -> None:
    """A descriptive name that is not a plain file name never reaches the filesystem."""
    item = _edited_item(name)
    destination = tmp_path / "dest"

    with pytest.raises(ExportError, match="not a plain file name"):
        m.export_to_directory(item, destination, BatchSettings())

    assert sorted(p.name for p in tmp_path.iterdir()) == []
    assert item.exported is False


def test_export_batch_refuses_path_like_names() -> None:
    """One unsafe name fails the whole archive and flags nothing as exported."""
    good = _done_item("fox")
    bad = _edited_item("../escaped")

    with pytest.raises(ExportError, match="not a plain file name"):
        m.export_batch([good, bad], BatchSettings(), today=TODAY)
    assert good.exported is False
    assert bad.exported is False


def test_export_refuses_separator_in_prefix(tmp_path: Path) -> None:
    """Settings cannot smuggle a directory into the name either."""
    with pytest.raises(ExportError):
        m.export_to_directory(_done_item("fox"), tmp_path, BatchSettings(prefix="../up"))


def test_export_batch_blank_names_fall_back_to_placeholder() -> None:
    """Blank names become unnamed-image and collisions keep the extension."""
    first = _edited_item("")
    second = _edited_item("   ")

    archive = m.export_batch([first, second], BatchSettings(), today=TODAY)

    assert _zip_names(archive.data) == [
        "unnamed-image.jpg",
        "unnamed-image.md",
        "unnamed-image-2.jpg",
        "unnamed-image-2.md",
    ]


class _FailingExifTool(_FakeExifTool):
    def set_tags(self, *, files: list[str], tags: dict[str, Any], params: list[str]) -> None:
        msg = "exiftool rejected the file"
        raise OSError(msg)


def test_failed_embed_removes_written_files(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An embed failure leaves no copy or sidecar behind, so a retry keeps the plain name."""
    monkeypatch.setattr(m, "ExifToolHelper", _FailingExifTool)
    item = _done_item("fox")

    with pytest.raises(ExportError, match="embed"):
        m.export_to_directory(item, tmp_path, BatchSettings(), today=TODAY, embed=True)
    assert list(tmp_path.iterdir()) == []
    assert item.exported is False

    monkeypatch.setattr(m, "ExifToolHelper", _FakeExifTool)
    assert m.export_to_directory(item, tmp_path, BatchSettings(), today=TODAY) == "fox.jpg"
    assert item.exported is True


def test_failed_sidecar_write_removes_copied_image(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When the sidecar cannot be written the already copied image is removed again."""

    def broken_format(*_args: Any, **_kwargs: Any) -> str:
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(m, "format_metadata", broken_format)
    item = _done_item("fox")

    with pytest.raises(ExportError, match="disk full"):
        m.export_to_directory(item, tmp_path, BatchSettings(), today=TODAY)
    assert list(tmp_path.iterdir()) == []
    assert item.exported is False
