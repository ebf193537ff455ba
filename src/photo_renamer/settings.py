"""Persist batch settings (language, prefix, suffix, separator) between sessions."""

import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from photo_renamer.models import BatchSettings


def default_settings_path() -> Path:
    """Location of the settings file; ``PHOTO_RENAMER_SETTINGS`` overrides the default."""
    override = os.getenv("PHOTO_RENAMER_SETTINGS")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "photo-renamer" / "settings.json"


def load_settings(path: Path | None = None) -> BatchSettings:
    """
    Read persisted settings, falling back to defaults when anything is wrong.

    A missing file, an unreadable file and malformed JSON all yield ``BatchSettings()``.
    Unknown keys are ignored and missing keys take their defaults.

    """
    path = path or default_settings_path()
    if not path.exists():
        logger.debug("settings_file_missing", path=str(path))
        return BatchSettings()

    try:
        settings = BatchSettings.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError, UnicodeDecodeError) as exc:
        logger.warning("settings_unreadable_using_defaults", path=str(path), error=str(exc))
        return BatchSettings()

    logger.debug("settings_loaded", path=str(path), **settings.model_dump())
    return settings


def save_settings(settings: BatchSettings, path: Path | None = None) -> Path:
    """Write settings as JSON, creating the parent directory if needed."""
    path = path or default_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
    logger.info("settings_saved", path=str(path))
    return path
