"""
Data model for a batch of images: analysis records, settings and per-item state.

An ``ImageItem`` moves through ``pending -> processing -> done | error``; ``error`` may
re-enter ``processing``. ``exported`` is an independent flag that only ever goes from False
to True once the item has been written out.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Literal, assert_never
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from photo_renamer.errors import InvalidTransitionError
from photo_renamer.naming import check_plain_name


class MediaType(StrEnum):
    """Image media types accepted into a batch."""

    JPEG = "image/jpeg"
    PNG = "image/png"
    GIF = "image/gif"
    WEBP = "image/webp"

    @property
    def extension(self) -> str:
        """Conventional file extension for the media type."""
        return _MEDIA_TYPE_EXTENSIONS[self]


_MEDIA_TYPE_EXTENSIONS = {
    MediaType.JPEG: ".jpg",
    MediaType.PNG: ".png",
    MediaType.GIF: ".gif",
    MediaType.WEBP: ".webp",
}


class ImageStatus(StrEnum):
    """Lifecycle states of an image inside a batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class ImageAnalysis(BaseModel):
    """Descriptive metadata for one image; every field stays editable after analysis."""

    descriptive_name: str
    title: str = ""
    alt_text: str = ""
    meta_description: str = ""
    keywords: list[str] = Field(default_factory=list)
    location_name: str = ""
    city: str = ""
    state_province: str = ""
    country: str = ""

    @property
    def location_parts(self) -> list[str]:
        """Non-empty location fields, most specific first."""
        parts = [self.location_name, self.city, self.state_province, self.country]
        return [part for part in parts if part]


class BatchSettings(BaseModel):
    """User settings consumed by naming and analysis; frozen so a pass sees one snapshot."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    language: str = "en"
    prefix: str = ""
    suffix: str = ""
    separator: str = "-"


class _Update(BaseModel):
    model_config = ConfigDict(frozen=True)


class SetDescriptiveName(_Update):
    """Replace the descriptive name used for the exported file name."""

    field: Literal["descriptive_name"] = "descriptive_name"
    value: str

    @field_validator("value")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        return check_plain_name(value)


class SetTitle(_Update):
    field: Literal["title"] = "title"
    value: str


class SetAltText(_Update):
    field: Literal["alt_text"] = "alt_text"
    value: str


class SetMetaDescription(_Update):
    field: Literal["meta_description"] = "meta_description"
    value: str


class SetKeywords(_Update):
    """Replace the keyword list; order is kept as given."""

    field: Literal["keywords"] = "keywords"
    value: list[str]


class SetLocationName(_Update):
    field: Literal["location_name"] = "location_name"
    value: str


class SetCity(_Update):
    field: Literal["city"] = "city"
    value: str


class SetStateProvince(_Update):
    field: Literal["state_province"] = "state_province"
    value: str


class SetCountry(_Update):
    field: Literal["country"] = "country"
    value: str


AnalysisUpdate = Annotated[
    SetDescriptiveName
    | SetTitle
    | SetAltText
    | SetMetaDescription
    | SetKeywords
    | SetLocationName
    | SetCity
    | SetStateProvince
    | SetCountry,
    Field(discriminator="field"),
]

_ANALYSIS_UPDATE_ADAPTER: TypeAdapter[AnalysisUpdate] = TypeAdapter(AnalysisUpdate)


def parse_update(data: object) -> AnalysisUpdate:
    """
    Validate a raw ``{"field": ..., "value": ...}`` mapping into a typed update.

    Raises:
        pydantic.ValidationError: If the field name is unknown or the value has the wrong type.

    Examples:
        >>> parse_update({"field": "city", "value": "Lisbon"})
        SetCity(field='city', value='Lisbon')

    """
    return _ANALYSIS_UPDATE_ADAPTER.validate_python(data)


def apply_update(analysis: ImageAnalysis, update: AnalysisUpdate) -> None:
    """Apply one field update to an analysis record in place."""
    match update:
        case SetDescriptiveName(value=value):
            analysis.descriptive_name = value
        case SetTitle(value=value):
            analysis.title = value
        case SetAltText(value=value):
            analysis.alt_text = value
        case SetMetaDescription(value=value):
            analysis.meta_description = value
        case SetKeywords(value=value):
            analysis.keywords = list(value)
        case SetLocationName(value=value):
            analysis.location_name = value
        case SetCity(value=value):
            analysis.city = value
        case SetStateProvince(value=value):
            analysis.state_province = value
        case SetCountry(value=value):
            analysis.country = value
        case _:
            assert_never(update)


def _new_item_id() -> str:
    return uuid4().hex


@dataclass
class ImageItem:
    """
    One loaded image and its position in the processing/export lifecycle.

    ``original_file_name``, ``data`` and ``media_type`` are fixed at load time. State changes
    go through the transition methods, which raise ``InvalidTransitionError`` when the
    current state does not allow them.

    """

    original_file_name: str
    data: bytes = field(repr=False)
    media_type: MediaType
    source_path: Path | None = None
    id: str = field(default_factory=_new_item_id)
    status: ImageStatus = ImageStatus.PENDING
    error: str | None = None
    analysis: ImageAnalysis | None = None
    exported: bool = False
    final_file_name: str | None = None

    def begin_processing(self, *, force: bool = False) -> None:
        """
        Enter ``processing`` from ``pending`` or ``error``, clearing any previous error.

        With ``force`` a ``done`` item may be re-processed too; its analysis, including any
        user edits, is discarded.

        """
        allowed = {ImageStatus.PENDING, ImageStatus.ERROR}
        if force:
            allowed.add(ImageStatus.DONE)
        if self.status not in allowed:
            msg = f"cannot start processing item {self.id} while {self.status}"
            raise InvalidTransitionError(msg)
        self.status = ImageStatus.PROCESSING
        self.error = None
        self.analysis = None

    def complete(self, analysis: ImageAnalysis) -> None:
        """Record a successful analysis and move to ``done``."""
        self._require(ImageStatus.PROCESSING, "complete")
        self.analysis = analysis
        self.status = ImageStatus.DONE

    def fail(self, message: str) -> None:
        """Record a failed analysis and move to ``error``."""
        self._require(ImageStatus.PROCESSING, "fail")
        self.analysis = None
        self.error = message
        self.status = ImageStatus.ERROR

    def mark_exported(self, final_file_name: str) -> None:
        """Flag the item as exported under ``final_file_name``."""
        if self.status is not ImageStatus.DONE or self.analysis is None:
            msg = f"cannot export item {self.id} while {self.status}"
            raise InvalidTransitionError(msg)
        self.exported = True
        self.final_file_name = final_file_name

    def apply(self, update: AnalysisUpdate) -> None:
        """Edit one analysis field without touching the status."""
        if self.analysis is None:
            msg = f"item {self.id} has no analysis to edit"
            raise InvalidTransitionError(msg)
        apply_update(self.analysis, update)

    @property
    def is_exportable(self) -> bool:
        """True once the item is done and carries an analysis."""
        return self.status is ImageStatus.DONE and self.analysis is not None

    def _require(self, expected: ImageStatus, action: str) -> None:
        if self.status is not expected:
            msg = f"cannot {action} item {self.id} while {self.status}"
            raise InvalidTransitionError(msg)
