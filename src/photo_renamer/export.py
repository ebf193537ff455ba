"""
Export: write analysed images under their templated names, each with a Markdown sidecar.

Two destinations are supported:

- an in-memory ZIP archive (``export_batch``), all-or-nothing: items are only flagged as
  exported once the whole archive has been built;
- a directory on disk (``export_to_directory``), one item per call, with names made unique
  against what already exists in that directory.

A name counts as taken when either the image name or its ``.md`` sidecar is taken, so
``a.jpg`` and ``a.png`` never share ``a.md``.
"""

import shutil
import zipfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date
from io import BytesIO
from pathlib import Path

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger

from photo_renamer.errors import ExportError, InvalidTransitionError
from photo_renamer.formatter import format_metadata, today_utc
from photo_renamer.models import BatchSettings, ImageAnalysis, ImageItem
from photo_renamer.naming import (
    UNNAMED_IMAGE,
    build_file_name,
    check_plain_name,
    get_extension,
    resolve_unique,
    sidecar_name,
)


@dataclass
class ArchiveEntry:
    """Names given to one item inside an export archive."""

    item_id: str
    image_name: str
    sidecar_name: str


@dataclass
class ExportArchive:
    """A finished export bundle held in memory."""

    file_name: str
    data: bytes = field(repr=False)
    entries: list[ArchiveEntry] = field(default_factory=list)

    def write_to(self, directory: Path) -> Path:
        """
        Save the archive into ``directory`` under its own file name.

        Raises:
            ExportError: If the directory cannot be created or the file cannot be written.

        """
        target = directory / self.file_name
        try:
            directory.mkdir(parents=True, exist_ok=True)
            target.write_bytes(self.data)
        except OSError as exc:
            msg = f"Cannot write archive {target}: {exc}"
            raise ExportError(msg) from exc
        logger.info("archive_written", path=str(target), size_kb=len(self.data) // 1024)
        return target


def archive_file_name(today: date) -> str:
    """
    Name of the export archive for a given day.

    Examples:
        >>> archive_file_name(date(2024, 5, 1))
        'image-export-2024-05-01.zip'

    """
    return f"image-export-{today.isoformat()}.zip"


def item_extension(item: ImageItem) -> str:
    """Extension of the item's original file, or the media type's default when it has none."""
    return get_extension(item.original_file_name) or item.media_type.extension


def target_file_name(item: ImageItem, settings: BatchSettings) -> str:
    """
    Templated, not yet de-duplicated, export name for an analysed item.

    A blank descriptive name falls back to ``unnamed-image`` so the result never starts with
    the extension's dot.

    Raises:
        InvalidTransitionError: If the item has no analysis.
        ExportError: If the name, prefix or suffix would not make a plain file name.

    """
    if item.analysis is None:
        msg = f"item {item.id} has no analysis"
        raise InvalidTransitionError(msg)
    try:
        name = build_file_name(
            settings.prefix,
            check_plain_name(item.analysis.descriptive_name) or UNNAMED_IMAGE,
            settings.suffix,
            settings.separator,
            item_extension(item),
        )
        return check_plain_name(name)
    except ValueError as exc:
        msg = f"Cannot export {item.original_file_name}: {exc}"
        raise ExportError(msg) from exc


def _pair_is_taken(exists: Callable[[str], bool]) -> Callable[[str], bool]:
    def is_taken(name: str) -> bool:
        return exists(name) or exists(sidecar_name(name))

    return is_taken


def export_batch(
    items: Iterable[ImageItem],
    settings: BatchSettings,
    *,
    today: date | None = None,
) -> ExportArchive:
    """
    Package every analysed item into one ZIP archive.

    Items that are not ``done`` or carry no analysis are skipped and left untouched. The rest
    are named in iteration order, each name made unique against the names already used in
    this archive. Once the archive is complete every packaged item is flagged as exported
    with its final name.

    Args:
        items: Items in batch order
        settings: Naming settings for this pass
        today: Date for the archive name and the sidecars; defaults to the current UTC date

    Returns:
        The archive, with one image entry and one ``.md`` entry per packaged item.

    Raises:
        ExportError: If building the archive fails; no item is flagged as exported then.

    """
    today = today or today_utc()
    used_names: set[str] = set()
    is_taken = _pair_is_taken(used_names.__contains__)
    packaged: list[tuple[ImageItem, ArchiveEntry]] = []
    buffer = BytesIO()

    try:
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for item in items:
                if not item.is_exportable or item.analysis is None:
                    logger.debug("export_skipped_not_done", item=item.id, status=str(item.status))
                    continue

                image_name = resolve_unique(target_file_name(item, settings), is_taken)
                md_name = sidecar_name(image_name)
                used_names.update((image_name, md_name))

                archive.writestr(image_name, item.data)
                archive.writestr(md_name, format_metadata(image_name, item.analysis, today=today))
                packaged.append((item, ArchiveEntry(item.id, image_name, md_name)))
                logger.debug(
                    "item_packaged",
                    item=item.id,
                    file=item.original_file_name,
                    final_name=image_name,
                )
    except (OSError, ValueError, zipfile.BadZipFile) as exc:
        logger.exception("archive_build_failed", error=str(exc))
        msg = f"Cannot build export archive: {exc}"
        raise ExportError(msg) from exc

    for item, entry in packaged:
        item.mark_exported(entry.image_name)

    export = ExportArchive(
        file_name=archive_file_name(today),
        data=buffer.getvalue(),
        entries=[entry for _, entry in packaged],
    )
    logger.info("archive_built", name=export.file_name, items=len(export.entries))
    return export


def build_embedded_tags(analysis: ImageAnalysis) -> dict[str, str | list[str]]:
    """
    Map an analysis record onto XMP/IPTC tags understood by ExifTool.

    Empty fields are left out.

    Examples:
        >>> build_embedded_tags(ImageAnalysis(descriptive_name="x", city="Kyoto"))
        {'XMP-photoshop:City': 'Kyoto', 'IPTC:City': 'Kyoto'}

    """
    tags: dict[str, str | list[str]] = {}
    if analysis.title:
        tags["XMP-dc:Title"] = analysis.title
        tags["IPTC:ObjectName"] = analysis.title
    if analysis.meta_description:
        tags["XMP-dc:Description"] = analysis.meta_description
        tags["XMP-exif:ImageDescription"] = analysis.meta_description
    if analysis.alt_text:
        tags["XMP-iptcCore:AltTextAccessibility"] = analysis.alt_text
    if analysis.keywords:
        tags["XMP-dc:Subject"] = list(analysis.keywords)
        # Lightroom prioritizes IPTC:Keywords for JPEGs, so mirror the Subject list there.
        tags["IPTC:Keywords"] = list(analysis.keywords)
    if analysis.location_name:
        tags["XMP-iptcCore:Location"] = analysis.location_name
        tags["IPTC:Sub-location"] = analysis.location_name
    if analysis.city:
        tags["XMP-photoshop:City"] = analysis.city
        tags["IPTC:City"] = analysis.city
    if analysis.state_province:
        tags["XMP-photoshop:State"] = analysis.state_province
        tags["IPTC:Province-State"] = analysis.state_province
    if analysis.country:
        tags["XMP-photoshop:Country"] = analysis.country
        tags["IPTC:Country-PrimaryLocationName"] = analysis.country
    return tags


def embed_metadata(image_path: Path, analysis: ImageAnalysis) -> None:
    """
    Write the analysis into an exported image file with ExifTool.

    Raises:
        ExportError: If ExifTool is unavailable or rejects the write.

    """
    tags = build_embedded_tags(analysis)
    if not tags:
        logger.warning("no_data_to_embed", file=image_path.name)
        return

    try:
        with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
            et.set_tags(
                files=[str(image_path)],
                tags=tags,
                params=["-overwrite_original"],
            )
    except (ValueError, TypeError, OSError, ExifToolExecuteError) as exc:
        logger.exception("metadata_embed_failed", error=str(exc), target=str(image_path))
        msg = f"Cannot embed metadata into {image_path.name}: {exc}"
        raise ExportError(msg) from exc

    logger.info("metadata_embedded", target=str(image_path), tags=len(tags))


def export_to_directory(
    item: ImageItem,
    destination: Path,
    settings: BatchSettings,
    *,
    today: date | None = None,
    embed: bool = False,
) -> str:
    """
    Copy one analysed item into ``destination`` with its sidecar and flag it as exported.

    The name is made unique against files that already exist in the destination at call
    time. Concurrent writers to the same directory are not guarded against.

    Args:
        item: A ``done`` item with an analysis
        destination: Target directory; created when missing
        settings: Naming settings for this export
        today: Date stamped into the sidecar; defaults to the current UTC date
        embed: Also write the metadata into the copied image with ExifTool

    Returns:
        The final file name of the exported image.

    Raises:
        InvalidTransitionError: If the item is not ready for export.
        ExportError: If naming, copying, writing or embedding fails; files written by this
            call are removed again and the item stays unexported.

    """
    if not item.is_exportable or item.analysis is None:
        msg = f"item {item.id} is not ready for export ({item.status})"
        raise InvalidTransitionError(msg)

    final_name = target_file_name(item, settings)
    written: list[Path] = []
    try:
        destination.mkdir(parents=True, exist_ok=True)
        final_name = resolve_unique(
            final_name,
            _pair_is_taken(lambda name: (destination / name).exists()),
        )
        target = destination / final_name
        written.append(target)
        if item.source_path is not None:
            shutil.copyfile(item.source_path, target)
        else:
            target.write_bytes(item.data)
        sidecar = destination / sidecar_name(final_name)
        written.append(sidecar)
        sidecar.write_text(
            format_metadata(final_name, item.analysis, today=today),
            encoding="utf-8",
        )
        if embed:
            embed_metadata(target, item.analysis)
    except ExportError:
        _remove_partial(written)
        raise
    except OSError as exc:
        _remove_partial(written)
        logger.exception("directory_export_failed", error=str(exc), destination=str(destination))
        msg = f"Cannot export {item.original_file_name} to {destination}: {exc}"
        raise ExportError(msg) from exc

    item.mark_exported(final_name)
    logger.info("item_exported", target=str(target), sidecar=sidecar.name)
    return final_name


def _remove_partial(paths: list[Path]) -> None:
    """Delete files left behind by a failed export so a retry can reuse their names."""
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("partial_export_not_removed", path=str(path), error=str(exc))
