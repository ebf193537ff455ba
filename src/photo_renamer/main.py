#!/usr/bin/env python3
"""
Photo Renamer: CLI app to name, describe and export images using AI.

Loads a batch of images, asks a vision-language model for a descriptive file name, title,
alt text, meta description, keywords and location, then exports every image under a
templated, collision-safe name next to a Markdown sidecar with that metadata.

Exports go either into a dated ZIP archive (default) or straight into a destination folder
(--dest). With --embed-metadata the folder copies also get the metadata written into the
file with ExifTool.

Requirements:
 - Ollama or LM Studio server running with a vision-language model, or an Anthropic API key.
 - Exiftool installed and available in PATH (only for --embed-metadata).

"""
# ruff: noqa: PLR0913

import asyncio
import contextlib
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from photo_renamer.analysis import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    AgentAnalyzer,
    ProviderName,
    create_agent,
)
from photo_renamer.batch import Batch, scan_for_images
from photo_renamer.errors import ConfigurationError, ExportError, ImageLoadError
from photo_renamer.models import BatchSettings
from photo_renamer.orchestrator import BatchOrchestrator
from photo_renamer.settings import load_settings, save_settings

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="photo-renamer",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    # Remove default handler
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-photo_renamer.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _resolve_image_files(inputs: list[Path]) -> list[Path]:
    """
    Resolve provided inputs into a list of image files.

    - Directories are expanded to the images directly inside them, sorted by name
    - Explicit files are accepted as-is
    - Order is preserved and duplicates removed
    """
    combined: list[Path] = []
    seen: set[str] = set()

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            candidates = scan_for_images(path_resolved)
        elif path_resolved.is_file():
            candidates = [path_resolved]
        else:
            logger.warning("input_not_file_or_dir", path=str(path))
            continue

        for candidate in candidates:
            key = str(candidate)
            if key not in seen:
                combined.append(candidate)
                seen.add(key)

    return combined


def _load_batch(image_files: list[Path]) -> tuple[Batch, int]:
    """Load files into a new batch; unreadable or unsupported files are logged and counted."""
    batch = Batch()
    load_failures = 0
    for image_file in image_files:
        try:
            batch.add_file(image_file)
        except ImageLoadError as exc:
            logger.error("image_load_failed", file=image_file.name, error=str(exc))
            load_failures += 1
    logger.info("batch_loaded", count=len(batch), failed=load_failures)
    return batch, load_failures


def _merge_settings(
    stored: BatchSettings,
    *,
    language: str | None,
    prefix: str | None,
    suffix: str | None,
    separator: str | None,
) -> BatchSettings:
    overrides = {
        key: value
        for key, value in {
            "language": language,
            "prefix": prefix,
            "suffix": suffix,
            "separator": separator,
        }.items()
        if value is not None
    }
    return stored.model_copy(update=overrides) if overrides else stored


async def _run_pipeline(
    orchestrator: BatchOrchestrator,
    *,
    dest: Path | None,
    archive_dir: Path,
    embed_metadata: bool,
) -> int:
    """Process then export the batch; returns the number of failed items."""
    processing = await orchestrator.process_all()
    for failure in processing.failures:
        logger.error("file_failed", file=failure.file_name, error=failure.error)

    if not orchestrator.batch.done():
        logger.warning("nothing_to_export")
        return processing.failed

    if dest is not None:
        export = await orchestrator.export_all(dest, embed=embed_metadata)
        for failure in export.failures:
            logger.error("file_export_failed", file=failure.file_name, error=failure.error)
        return processing.failed + export.failed

    archive = await orchestrator.export_archive()
    archive.write_to(archive_dir)
    return processing.failed


@app.default
def run(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: image files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    dest: Annotated[
        Path | None,
        Parameter(
            name=("--dest", "-d"),
            help="Export into this folder instead of building a ZIP archive",
        ),
    ] = None,
    archive_dir: Annotated[
        Path,
        Parameter(
            name=("--archive-dir",),
            help="Folder where the ZIP archive is written",
        ),
    ] = Path(),
    embed_metadata: Annotated[
        bool,
        Parameter(
            name=("--embed-metadata",),
            negative="--no-embed-metadata",
            help="Also write the metadata into exported files with ExifTool (--dest only)",
        ),
    ] = False,
    prefix: Annotated[
        str | None,
        Parameter(name=("--prefix",), help="Text placed before the AI name"),
    ] = None,
    suffix: Annotated[
        str | None,
        Parameter(name=("--suffix",), help="Text placed after the AI name"),
    ] = None,
    separator: Annotated[
        str | None,
        Parameter(name=("--separator",), help="Separator between prefix, name and suffix"),
    ] = None,
    language: Annotated[
        str | None,
        Parameter(name=("--language", "-l"), help="Language of the generated metadata"),
    ] = None,
    persist_settings: Annotated[
        bool,
        Parameter(
            name=("--save-settings",),
            help="Remember prefix/suffix/separator/language for later runs",
        ),
    ] = False,
    settings_file: Annotated[
        Path | None,
        Parameter(name=("--settings-file",), help="Settings file to read and write"),
    ] = None,
    model_name: Annotated[
        str | None,
        Parameter(
            name=("--model", "-m"),
            help="Vision-language model name",
        ),
    ] = None,
    provider_name: Annotated[
        ProviderName,
        Parameter(
            name=("--provider",),
            help="Backend provider: 'ollama', 'lmstudio' or 'anthropic'",
        ),
    ] = "lmstudio",
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    temperature: Annotated[
        float,
        Parameter(
            name=("--temperature",),
            help="Sampling temperature (0.0-1.0)",
        ),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(
            name=("--max-tokens",),
            help="Maximum tokens to generate",
        ),
    ] = DEFAULT_MAX_TOKENS,
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_DIMENSIONS,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Analyse images with AI, then export them with templated names and Markdown sidecars.

    Inputs:
    - One or more --input/-i paths (files and/or directories; repeatable).
    - Directories contribute the JPEG, PNG, GIF and WEBP files directly inside them.
    - You can mix files and directories; order is preserved, duplicates skipped.

    Behavior:
    - Images are analysed one at a time; a failing image is reported and the run goes on.
    - Names follow [prefix]<separator><ai-name><separator>[suffix].<ext>; clashes get -2, -3, ...
    - Without --dest, a single image-export-YYYY-MM-DD.zip is written into --archive-dir.

    Exit status: returns 1 if no images were found, configuration is invalid or any image fails.

    Examples:
        photo-renamer -i ./photos --prefix blog --suffix hero
        photo-renamer -i ./photos -d ./export --provider ollama -m qwen2.5vl:7b
        photo-renamer -i ./photos/IMG_0001.JPG --provider anthropic --language de

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    settings = _merge_settings(
        load_settings(settings_file),
        language=language,
        prefix=prefix,
        suffix=suffix,
        separator=separator,
    )
    logger.info(
        "starting_photo_renamer",
        inputs=[str(p) for p in (inputs or [])],
        dest=str(dest) if dest else None,
        archive_dir=str(archive_dir),
        embed_metadata=embed_metadata,
        model=model_name,
        provider=provider_name,
        api_base_url=api_base_url,
        api_key_present=bool(api_key),
        temperature=temperature,
        max_tokens=max_tokens,
        **settings.model_dump(),
    )
    if persist_settings:
        save_settings(settings, settings_file)
    if embed_metadata and dest is None:
        logger.warning(
            "embed_metadata_ignored_without_dest",
            hint="Metadata is only embedded into folder exports; pass --dest",
        )

    if not inputs:
        logger.error(
            "no_inputs_provided",
            hint=("Pass one or more --input/-i paths (files or directories)"),
        )
        raise SystemExit(1)

    try:
        image_files = _resolve_image_files(inputs)
    except ImageLoadError as exc:
        logger.error("input_scan_failed", error=str(exc))
        raise SystemExit(1) from exc
    if not image_files:
        logger.error("no_image_files_found", inputs=[str(p) for p in inputs])
        raise SystemExit(1)
    logger.info("image_files_discovered", count=len(image_files))

    batch, load_failures = _load_batch(image_files)

    try:
        agent = create_agent(
            provider_name,
            model_name,
            api_base_url=api_base_url,
            api_key=api_key,
        )
    except ConfigurationError as exc:
        logger.error("configuration_invalid", error=str(exc))
        raise SystemExit(1) from exc

    analyzer = AgentAnalyzer(
        agent,
        temperature=temperature,
        max_tokens=max_tokens,
        jpeg_dimensions=jpeg_dimensions,
        jpeg_quality=jpeg_quality,
    )
    orchestrator = BatchOrchestrator(batch, settings, analyzer)

    try:
        failed = asyncio.run(
            _run_pipeline(
                orchestrator,
                dest=dest,
                archive_dir=archive_dir,
                embed_metadata=embed_metadata,
            ),
        )
    except ExportError as exc:
        logger.error("export_failed", error=str(exc))
        raise SystemExit(1) from exc

    failed += load_failures
    exported = sum(1 for item in batch if item.exported)
    logger.info(
        "processing_summary",
        total_files=len(image_files),
        exported=exported,
        failed=failed,
    )
    if failed:
        raise SystemExit(1)


@app.command(name="settings")
def settings_command(
    *,
    prefix: Annotated[str | None, Parameter(name=("--prefix",))] = None,
    suffix: Annotated[str | None, Parameter(name=("--suffix",))] = None,
    separator: Annotated[str | None, Parameter(name=("--separator",))] = None,
    language: Annotated[str | None, Parameter(name=("--language", "-l"))] = None,
    settings_file: Annotated[
        Path | None,
        Parameter(name=("--settings-file",), help="Settings file to read and write"),
    ] = None,
) -> None:
    """
    Show the saved naming settings; pass options to change and save them.

    Examples:
        photo-renamer settings
        photo-renamer settings --prefix blog --separator _

    """
    stored = load_settings(settings_file)
    updated = _merge_settings(
        stored,
        language=language,
        prefix=prefix,
        suffix=suffix,
        separator=separator,
    )
    if updated != stored:
        save_settings(updated, settings_file)
    print(updated.model_dump_json(indent=2))  # noqa: T201


if __name__ == "__main__":
    app()
