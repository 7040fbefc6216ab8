import asyncio
import logging
from typing import Any, Optional, Protocol, Sequence

from activity_ingestion.archive import ArchiveExtractor, ArchiveSource, ProgressCallback, report_progress
from activity_ingestion.config import get_settings
from activity_ingestion.decoders import decode_activity, detect_format
from activity_ingestion.duplicates import (
    ActivityLookup,
    BatchIndex,
    DuplicateDetector,
    DuplicatePolicy,
    ExistingActivity,
    multi_file_policy as default_multi_file_policy,
    single_file_policy as default_single_file_policy,
)
from activity_ingestion.errors import (
    ActivitySkipped,
    DecodeError,
    DuplicateDetected,
    InvalidArchive,
    MissingStartDate,
    NoGpsData,
    TooShort,
    UnsupportedFormat,
)
from activity_ingestion.metrics import ACTIVE_IMPORTS, ACTIVITY_DECODE_TIME, IMPORT_FILES_TOTAL
from activity_ingestion.models import (
    CanonicalActivity,
    ImportOutcome,
    ImportPhase,
    ImportProgress,
    ImportReport,
    UploadedFile,
)
from activity_ingestion.normalize import to_activity_record

logger = logging.getLogger(__name__)


class ActivityStore(ActivityLookup, Protocol):
    async def save(self, record: dict[str, Any]) -> Any:
        """Persist a normalized activity record."""
        ...


class BatchImportOrchestrator:
    """Drives single-file, multi-file and archive imports end to end.

    Every input file ends up in exactly one of the report's success, skipped
    or failed buckets. A failing file never stops the rest of the import.

    Per file: detect format -> decode -> qualify (GPS data, distance, start
    date) -> duplicate check -> persist through the optional store.
    """

    def __init__(
        self,
        store: Optional[ActivityStore] = None,
        user_id: Optional[str] = None,
        extractor: Optional[ArchiveExtractor] = None,
        min_distance_km: Optional[float] = None,
        single_file_policy: Optional[DuplicatePolicy] = None,
        multi_file_policy: Optional[DuplicatePolicy] = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.user_id = user_id
        self.extractor = extractor or ArchiveExtractor()
        self.min_distance_km = (
            min_distance_km if min_distance_km is not None else settings.MIN_ACTIVITY_DISTANCE_KM
        )
        self.single_file_policy = single_file_policy or default_single_file_policy()
        self.multi_file_policy = multi_file_policy or default_multi_file_policy()

    async def import_file(
        self,
        file_name: str,
        content: bytes,
        progress: Optional[ProgressCallback] = None,
    ) -> ImportReport:
        """Import one uploaded file using the single-file duplicate policy."""
        return await self._import_uploads(
            [UploadedFile(file_name=file_name, content=content)],
            DuplicateDetector(self.single_file_policy),
            progress,
        )

    async def import_files(
        self,
        files: Sequence[UploadedFile],
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ImportReport:
        """Import several uploaded files in order using the multi-file duplicate policy."""
        return await self._import_uploads(
            files, DuplicateDetector(self.multi_file_policy), progress, cancel_event
        )

    async def import_archive(
        self,
        source: ArchiveSource,
        archive_name: str = "archive.zip",
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ImportReport:
        """Import every supported activity file of an export archive.

        Entries are decoded batch by batch as the extractor yields them, so
        only one batch of raw files is held at a time. An archive that cannot
        be opened results in a single failed outcome.
        """
        report = ImportReport()
        index = BatchIndex()
        detector = DuplicateDetector(self.multi_file_policy)
        total = 0

        async def on_extract(event: ImportProgress) -> None:
            nonlocal total
            total = event.total
            await report_progress(progress, event)

        ACTIVE_IMPORTS.inc()
        try:
            async for batch in self.extractor.iter_batches(source, on_extract, cancel_event):
                for entry in batch:
                    outcome = await self._import_one(
                        entry.file_name, entry.raw_bytes, detector, index, entry.strava_name
                    )
                    report.add(outcome)
                    await report_progress(progress, ImportProgress(
                        phase=ImportPhase.IMPORTING,
                        current=report.total,
                        total=total,
                        file_name=entry.file_name,
                    ))
        except InvalidArchive as e:
            logger.error(f"Failed to open archive {archive_name}: {str(e)}")
            IMPORT_FILES_TOTAL.labels(format="zip", outcome="failed").inc()
            report.add(ImportOutcome.failed(archive_name, str(e)))
        finally:
            ACTIVE_IMPORTS.dec()

        self._log_report(archive_name, report)
        return report

    async def _import_uploads(
        self,
        files: Sequence[UploadedFile],
        detector: DuplicateDetector,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ImportReport:
        report = ImportReport()
        index = BatchIndex()
        ACTIVE_IMPORTS.inc()
        try:
            for position, upload in enumerate(files, start=1):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Import cancelled after {position - 1} of {len(files)} files")
                    break
                outcome = await self._import_one(
                    upload.file_name, upload.content, detector, index, upload.strava_name
                )
                report.add(outcome)
                await report_progress(progress, ImportProgress(
                    phase=ImportPhase.IMPORTING,
                    current=position,
                    total=len(files),
                    file_name=upload.file_name,
                ))
        finally:
            ACTIVE_IMPORTS.dec()

        self._log_report(f"{len(files)} uploaded files", report)
        return report

    async def _import_one(
        self,
        file_name: str,
        content: bytes,
        detector: DuplicateDetector,
        index: BatchIndex,
        strava_name: Optional[str] = None,
    ) -> ImportOutcome:
        try:
            source_format = detect_format(file_name, content)
        except UnsupportedFormat as e:
            logger.info(f"Skipping {file_name}: {str(e)}")
            IMPORT_FILES_TOTAL.labels(format="unknown", outcome="skipped").inc()
            return ImportOutcome.skipped(file_name, str(e))

        label = source_format.value
        try:
            logger.debug(f"Parsing {file_name} as {label}")
            with ACTIVITY_DECODE_TIME.labels(label).time():
                activity = await asyncio.to_thread(decode_activity, content, file_name, source_format)

            self._check_importable(activity)
            record = to_activity_record(activity, self.user_id, file_name, strava_name)
            await self._check_duplicate(activity, detector, index)

            if self.store is not None:
                await self.store.save(record)

            index.add(ExistingActivity(
                id=record["provider_activity_id"],
                name=record["name"],
                start_date=activity.metadata.start_time,
                distance=activity.summary.total_distance * 1000,
            ))
        except ActivitySkipped as e:
            logger.info(f"Skipping {file_name}: {str(e)}")
            IMPORT_FILES_TOTAL.labels(format=label, outcome="skipped").inc()
            return ImportOutcome.skipped(file_name, str(e))
        except DecodeError as e:
            logger.error(f"Failed to decode {file_name}: {str(e)}")
            IMPORT_FILES_TOTAL.labels(format=label, outcome="failed").inc()
            return ImportOutcome.failed(file_name, str(e))
        except Exception as e:
            logger.error(f"Failed to import {file_name}: {str(e)}")
            IMPORT_FILES_TOTAL.labels(format=label, outcome="failed").inc()
            return ImportOutcome.failed(file_name, str(e))

        logger.info(f"Imported {file_name} as \"{record['name']}\"")
        IMPORT_FILES_TOTAL.labels(format=label, outcome="success").inc()
        return ImportOutcome.success(file_name, activity, record)

    def _check_importable(self, activity: CanonicalActivity) -> None:
        if not activity.track_points:
            raise NoGpsData()
        if activity.summary.total_distance < self.min_distance_km:
            raise TooShort(self.min_distance_km)
        if activity.metadata.start_time is None:
            raise MissingStartDate()

    async def _check_duplicate(
        self,
        activity: CanonicalActivity,
        detector: DuplicateDetector,
        index: BatchIndex,
    ) -> None:
        start_time = activity.metadata.start_time
        distance_m = activity.summary.total_distance * 1000
        lookups = [index] if self.store is None else [self.store, index]
        for lookup in lookups:
            existing = await detector.find_duplicate(start_time, distance_m, lookup)
            if existing is not None:
                raise DuplicateDetected(existing)

    def _log_report(self, source: str, report: ImportReport) -> None:
        counts = report.counts()
        logger.info(
            f"Import of {source} finished: {counts['success']} imported, "
            f"{counts['skipped']} skipped, {counts['failed']} failed"
        )
