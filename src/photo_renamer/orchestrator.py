"""
Batch orchestration: analyse and export the items of a batch strictly one at a time.

Work is pushed through a ``SequentialRunner``, a FIFO queue drained by a single consumer,
so item N+1 never starts before item N has settled. Per-item failures are recorded on the
item and never stop the loop.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from loguru import logger

from photo_renamer.batch import Batch
from photo_renamer.errors import BatchBusyError, ConfigurationError, ExportError
from photo_renamer.export import ExportArchive, export_batch, export_to_directory
from photo_renamer.models import BatchSettings, ImageAnalysis, ImageItem, ImageStatus, MediaType

T = TypeVar("T")

Analyzer = Callable[[bytes, MediaType, str], Awaitable[ImageAnalysis]]


class SequentialRunner:
    """A work queue drained one entry at a time by a single consumer."""

    def __init__(self) -> None:
        self._queue: deque[str] = deque()
        self._stop_requested = False
        self.running = False

    @property
    def queued(self) -> int:
        """Entries still waiting to start."""
        return len(self._queue)

    def stop(self) -> None:
        """Let the in-flight entry settle, then leave the rest of the queue unstarted."""
        if self.running:
            logger.info("runner_stop_requested", queued=len(self._queue))
            self._stop_requested = True

    async def drain(
        self,
        entries: Iterable[str],
        handle: Callable[[str], Awaitable[T]],
    ) -> list[T]:
        """
        Run ``handle`` for each entry in order, awaiting each before starting the next.

        Raises:
            BatchBusyError: If a drain is already running on this runner.

        """
        if self.running:
            msg = "a batch run is already in progress"
            raise BatchBusyError(msg)

        self._queue.extend(entries)
        self._stop_requested = False
        self.running = True
        results: list[T] = []
        try:
            while self._queue and not self._stop_requested:
                entry = self._queue.popleft()
                results.append(await handle(entry))
        finally:
            if self._queue:
                logger.info("runner_stopped_early", unstarted=len(self._queue))
            self._queue.clear()
            self.running = False
        return results


@dataclass
class ItemFailure:
    """An item that did not make it through a run, with the reason."""

    item_id: str
    file_name: str
    error: str


@dataclass
class ProcessingSummary:
    """Outcome of a ``process_all`` run."""

    total: int = 0
    succeeded: int = 0
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def not_started(self) -> int:
        """Items of the snapshot that were never attempted (stopped or changed meanwhile)."""
        return self.total - self.succeeded - self.failed


@dataclass
class ExportSummary:
    """Outcome of an ``export_all`` run."""

    exported: list[str] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


class BatchOrchestrator:
    """
    Drive the items of one batch through analysis and export.

    Only one run (``process_all``, ``export_all`` or ``export_archive``) may be in flight at a
    time; starting another raises ``BatchBusyError``.

    """

    def __init__(
        self,
        batch: Batch,
        settings: BatchSettings,
        analyzer: Analyzer | None = None,
    ) -> None:
        """
        Set up an orchestrator for ``batch``.

        Args:
            batch: The session's batch; the orchestrator is its only automated writer
            settings: Naming and language settings, swapped as a whole between runs
            analyzer: Async callable ``(image_bytes, media_type, language) -> ImageAnalysis``

        """
        self.batch = batch
        self.settings = settings
        self.analyzer = analyzer
        self.runner = SequentialRunner()

    def stop(self) -> None:
        """Ask the current run to stop after the in-flight item."""
        self.runner.stop()

    def _require_analyzer(self) -> Analyzer:
        if self.analyzer is None:
            msg = "No image analyzer is configured"
            raise ConfigurationError(msg)
        return self.analyzer

    async def process_all(self) -> ProcessingSummary:
        """
        Analyse every item that is pending when the call starts, one after another.

        Items added or changed after the snapshot are not picked up by this run.

        Raises:
            ConfigurationError: If no analyzer is configured (nothing is touched).
            BatchBusyError: If another run is in flight.

        """
        analyzer = self._require_analyzer()
        settings = self.settings
        snapshot = [item.id for item in self.batch.pending()]
        logger.info("process_all_started", count=len(snapshot), language=settings.language)

        async def handle(item_id: str) -> ImageItem | None:
            return await self._process_item(
                item_id,
                analyzer,
                settings,
                allowed={ImageStatus.PENDING},
            )

        processed = await self.runner.drain(snapshot, handle)

        summary = ProcessingSummary(total=len(snapshot))
        for item in processed:
            if item is None:
                continue
            if item.status is ImageStatus.DONE:
                summary.succeeded += 1
            else:
                summary.failures.append(
                    ItemFailure(item.id, item.original_file_name, item.error or ""),
                )
        logger.info(
            "process_all_finished",
            total=summary.total,
            succeeded=summary.succeeded,
            failed=summary.failed,
            not_started=summary.not_started,
        )
        return summary

    async def process_single(self, item_id: str, *, force: bool = False) -> ImageItem | None:
        """
        Analyse one item that is pending or in error.

        Unknown ids and items in another state are logged and skipped. ``force`` also
        re-analyses a ``done`` item, discarding its previous analysis and any edits to it.

        Returns:
            The item after the attempt, or None when nothing was attempted.

        Raises:
            ConfigurationError: If no analyzer is configured.

        """
        analyzer = self._require_analyzer()
        allowed = {ImageStatus.PENDING, ImageStatus.ERROR}
        if force:
            allowed.add(ImageStatus.DONE)
        return await self._process_item(item_id, analyzer, self.settings, allowed=allowed)

    async def _process_item(
        self,
        item_id: str,
        analyzer: Analyzer,
        settings: BatchSettings,
        *,
        allowed: set[ImageStatus],
    ) -> ImageItem | None:
        item = self.batch.get(item_id)
        if item is None:
            logger.warning("item_not_found", item=item_id)
            return None
        if item.status not in allowed:
            logger.info("item_skipped", item=item_id, status=str(item.status))
            return None

        with logger.contextualize(item=item.id, file=item.original_file_name):
            item.begin_processing(force=ImageStatus.DONE in allowed)
            logger.info("item_processing_started", media_type=str(item.media_type))
            try:
                analysis = await analyzer(item.data, item.media_type, settings.language)
            except Exception as exc:  # noqa: BLE001
                message = str(exc) or type(exc).__name__
                logger.exception("item_processing_failed", error=message)
                item.fail(message)
            else:
                item.complete(analysis)
                logger.info("item_processing_succeeded", name=analysis.descriptive_name)
        return item

    async def export_all(self, destination: Path, *, embed: bool = False) -> ExportSummary:
        """
        Export every analysed, not yet exported item into ``destination``, one at a time.

        Each item is its own export unit: a failing item is reported and the loop moves on.

        Raises:
            BatchBusyError: If another run is in flight.

        """
        settings = self.settings
        targets = [item.id for item in self.batch.done() if not item.exported]
        logger.info("export_all_started", count=len(targets), destination=str(destination))
        summary = ExportSummary()

        async def handle(item_id: str) -> None:
            item = self.batch.get(item_id)
            if item is None or not item.is_exportable or item.exported:
                logger.info("export_skipped", item=item_id)
                return
            with logger.contextualize(item=item.id, file=item.original_file_name):
                try:
                    final_name = await asyncio.to_thread(
                        export_to_directory,
                        item,
                        destination,
                        settings,
                        embed=embed,
                    )
                except ExportError as exc:
                    logger.error("item_export_failed", error=str(exc))
                    summary.failures.append(
                        ItemFailure(item.id, item.original_file_name, str(exc)),
                    )
                else:
                    summary.exported.append(final_name)

        await self.runner.drain(targets, handle)
        logger.info(
            "export_all_finished",
            exported=len(summary.exported),
            failed=summary.failed,
        )
        return summary

    async def export_archive(self) -> ExportArchive:
        """
        Bundle every analysed item into one ZIP archive.

        Items are flagged as exported once the archive is built, before the caller saves it
        anywhere. The returned archive is the export; a later failure to write it to disk
        does not undo the flags.

        Raises:
            BatchBusyError: If another run is in flight.
            ExportError: If the archive cannot be built; no item is flagged as exported.

        """
        if self.runner.running:
            msg = "a batch run is already in progress"
            raise BatchBusyError(msg)
        self.runner.running = True
        try:
            return await asyncio.to_thread(export_batch, self.batch.items, self.settings)
        finally:
            self.runner.running = False
