"""
The batch: an explicitly owned, single-writer collection of images for one session.

A ``Batch`` is created when a session starts, mutated only by its owner (the orchestrator
and direct user edits) and emptied by ``reset``. Removed ids are gone for good.
"""

from collections.abc import Iterator
from io import BytesIO
from pathlib import Path

from loguru import logger
from PIL import Image, UnidentifiedImageError

from photo_renamer.errors import ImageLoadError, InvalidTransitionError
from photo_renamer.models import AnalysisUpdate, ImageItem, ImageStatus, MediaType

MAX_FILE_SIZE = 20 * 1024 * 1024  # 20 MB
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}

_EXTENSION_MEDIA_TYPES = {
    ".jpg": MediaType.JPEG,
    ".jpeg": MediaType.JPEG,
    ".png": MediaType.PNG,
    ".gif": MediaType.GIF,
    ".webp": MediaType.WEBP,
}
_PIL_FORMAT_MEDIA_TYPES = {
    "JPEG": MediaType.JPEG,
    "MPO": MediaType.JPEG,
    "PNG": MediaType.PNG,
    "GIF": MediaType.GIF,
    "WEBP": MediaType.WEBP,
}


def detect_media_type(file_name: str, data: bytes) -> MediaType:
    """
    Work out the media type of an image payload.

    The bytes are sniffed with PIL first; the file extension is only used when PIL cannot
    identify the payload.

    Raises:
        ImageLoadError: If neither the content nor the extension maps to a supported type.

    """
    try:
        with Image.open(BytesIO(data)) as img:
            pil_format = img.format
    except (UnidentifiedImageError, OSError):
        pil_format = None

    if pil_format in _PIL_FORMAT_MEDIA_TYPES:
        return _PIL_FORMAT_MEDIA_TYPES[pil_format]

    extension = Path(file_name).suffix.lower()
    if extension in _EXTENSION_MEDIA_TYPES:
        logger.debug("media_type_from_extension", file=file_name, extension=extension)
        return _EXTENSION_MEDIA_TYPES[extension]

    msg = f"Unsupported image type: {file_name}"
    raise ImageLoadError(msg)


def scan_for_images(directory: Path) -> list[Path]:
    """
    List the image files directly inside ``directory``, sorted by name.

    Raises:
        ImageLoadError: If ``directory`` is not a directory.

    """
    if not directory.is_dir():
        msg = f"Invalid directory: {directory}"
        raise ImageLoadError(msg)
    files = [
        entry
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix.lower() in IMAGE_EXTENSIONS
    ]
    return sorted(files, key=lambda path: path.name)


class Batch:
    """Images loaded for processing and export, kept in load order."""

    def __init__(self) -> None:
        self._items: dict[str, ImageItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ImageItem]:
        return iter(list(self._items.values()))

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    @property
    def items(self) -> list[ImageItem]:
        """Snapshot of all items in load order."""
        return list(self._items.values())

    def add_bytes(
        self,
        file_name: str,
        data: bytes,
        *,
        source_path: Path | None = None,
    ) -> ImageItem:
        """
        Add an in-memory image payload as a new pending item.

        Raises:
            ImageLoadError: If the payload is empty, too large or not a supported image.

        """
        if not data:
            msg = f"Image is empty: {file_name}"
            raise ImageLoadError(msg)
        if len(data) > MAX_FILE_SIZE:
            msg = f"Image exceeds {MAX_FILE_SIZE // (1024 * 1024)} MB: {file_name}"
            raise ImageLoadError(msg)

        item = ImageItem(
            original_file_name=file_name,
            data=data,
            media_type=detect_media_type(file_name, data),
            source_path=source_path,
        )
        self._items[item.id] = item
        logger.debug(
            "image_loaded",
            item=item.id,
            file=file_name,
            media_type=str(item.media_type),
            size_kb=len(data) // 1024,
        )
        return item

    def add_file(self, path: Path) -> ImageItem:
        """
        Read an image file from disk and add it as a new pending item.

        Raises:
            ImageLoadError: If the file cannot be read or is not a supported image.

        """
        try:
            data = path.read_bytes()
        except OSError as exc:
            msg = f"Cannot read {path}: {exc}"
            raise ImageLoadError(msg) from exc
        return self.add_bytes(path.name, data, source_path=path)

    def get(self, item_id: str) -> ImageItem | None:
        return self._items.get(item_id)

    def remove(self, item_id: str) -> bool:
        """Drop an item; returns False when the id is unknown."""
        removed = self._items.pop(item_id, None)
        if removed is not None:
            logger.debug("image_removed", item=item_id, file=removed.original_file_name)
        return removed is not None

    def reset(self) -> None:
        """Remove every item from the batch."""
        logger.debug("batch_reset", count=len(self._items))
        self._items.clear()

    def pending(self) -> list[ImageItem]:
        return [item for item in self._items.values() if item.status is ImageStatus.PENDING]

    def done(self) -> list[ImageItem]:
        return [item for item in self._items.values() if item.is_exportable]

    def edit(self, item_id: str, update: AnalysisUpdate) -> ImageItem:
        """
        Apply a user edit to one field of an item's analysis.

        Raises:
            InvalidTransitionError: If the id is unknown or the item has no analysis yet.

        """
        item = self._items.get(item_id)
        if item is None:
            msg = f"unknown item {item_id}"
            raise InvalidTransitionError(msg)
        item.apply(update)
        logger.debug("analysis_edited", item=item_id, field=update.field)
        return item
