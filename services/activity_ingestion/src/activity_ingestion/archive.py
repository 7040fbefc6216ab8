"""Extraction of activity files from bulk export archives (e.g. a Strava export).

Entries are classified by name before any bytes are read, so photos and other
payloads never get loaded. Supported entries are read in fixed-size batches;
each batch is read concurrently and fully awaited before the next one starts,
which bounds the number of open entries and the bytes held in memory.

Entries are processed in the archive's central directory order.
"""

import asyncio
import csv
import inspect
import io
import logging
import os
import re
from typing import IO, AsyncIterator, Awaitable, Callable, Optional, Union, List
import zipfile

from pydantic import BaseModel, Field

from activity_ingestion.config import get_settings
from activity_ingestion.errors import InvalidArchive
from activity_ingestion.models import ArchiveEntry, ArchiveFileType, ImportPhase, ImportProgress

logger = logging.getLogger(__name__)

MANIFEST_NAME = "activities.csv"

ProgressCallback = Callable[[ImportProgress], Optional[Awaitable[None]]]
ArchiveSource = Union[str, os.PathLike, bytes, IO[bytes]]

SUFFIX_TYPES = (
    (".fit.gz", ArchiveFileType.FIT_GZ),
    (".fit", ArchiveFileType.FIT),
    (".gpx.gz", ArchiveFileType.GPX_GZ),
    (".gpx", ArchiveFileType.GPX),
    (".tcx.gz", ArchiveFileType.TCX),
    (".tcx", ArchiveFileType.TCX),
)


async def report_progress(callback: Optional[ProgressCallback], progress: ImportProgress) -> None:
    """Invoke a progress callback, awaiting it when it is a coroutine function."""
    if callback is None:
        return
    result = callback(progress)
    if inspect.isawaitable(result):
        await result


def classify_entry(path: str) -> ArchiveFileType:
    lower = path.lower()
    for suffix, file_type in SUFFIX_TYPES:
        if lower.endswith(suffix):
            return file_type
    return ArchiveFileType.OTHER


class ArchiveManifest(BaseModel):
    """Display names from an export's activities.csv."""
    names_by_id: dict[str, str] = Field(default_factory=dict)
    names_by_file: dict[str, str] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.names_by_id)

    def lookup(self, path: str) -> Optional[str]:
        base_name = os.path.basename(path)
        if base_name in self.names_by_file:
            return self.names_by_file[base_name]
        match = re.match(r"(\d+)", base_name)
        if match:
            return self.names_by_id.get(match.group(1))
        return None


def _column(header: List[str], name: str, fallback: Optional[int]) -> Optional[int]:
    lowered = [column.strip().lower() for column in header]
    return lowered.index(name) if name in lowered else fallback


def parse_manifest(text: str) -> ArchiveManifest:
    """Parse activities.csv, mapping numeric activity ids to activity names.

    Quoted fields containing commas are handled by the csv module. Columns are
    located by header name; without the expected headers the id is taken from
    the first column and the name from the third. Malformed rows are ignored.
    """
    manifest = ArchiveManifest()
    reader = csv.reader(io.StringIO(text))
    header = next(reader, None)
    if not header:
        return manifest

    id_column = _column(header, "activity id", 0)
    name_column = _column(header, "activity name", 2)
    file_column = _column(header, "filename", None)

    for row in reader:
        if len(row) <= max(id_column, name_column):
            continue
        activity_id = row[id_column].strip()
        name = row[name_column].strip()
        if not activity_id.isdigit() or not name:
            continue
        manifest.names_by_id[activity_id] = name
        if file_column is not None and len(row) > file_column and row[file_column].strip():
            manifest.names_by_file[os.path.basename(row[file_column].strip())] = name
    return manifest


def _open_archive(source: ArchiveSource) -> zipfile.ZipFile:
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    try:
        return zipfile.ZipFile(source)
    except (zipfile.BadZipFile, OSError) as e:
        raise InvalidArchive(f"Could not open archive: {e}") from e


class ArchiveExtractor:
    """Reads supported activity files out of a ZIP export in bounded batches."""

    def __init__(self, batch_size: Optional[int] = None) -> None:
        self.batch_size = batch_size or get_settings().ARCHIVE_BATCH_SIZE
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")

    def read_manifest(self, archive: zipfile.ZipFile) -> ArchiveManifest:
        for info in archive.infolist():
            if info.is_dir() or os.path.basename(info.filename).lower() != MANIFEST_NAME:
                continue
            try:
                text = archive.read(info).decode("utf-8-sig", errors="replace")
            except (zipfile.BadZipFile, OSError, RuntimeError) as e:
                logger.warning(f"Could not read manifest {info.filename}: {e}")
                return ArchiveManifest()
            manifest = parse_manifest(text)
            logger.info(f"Loaded {len(manifest)} activity names from {info.filename}")
            return manifest
        logger.info("No activities.csv found in archive")
        return ArchiveManifest()

    def list_candidates(self, archive: zipfile.ZipFile) -> List[tuple[zipfile.ZipInfo, ArchiveFileType]]:
        candidates = []
        skipped = 0
        for info in archive.infolist():
            if info.is_dir():
                continue
            file_type = classify_entry(info.filename)
            if file_type.is_supported:
                candidates.append((info, file_type))
            else:
                skipped += 1
        logger.info(f"Archive contains {len(candidates)} activity files ({skipped} other entries ignored)")
        return candidates

    def _read_entry(self, archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
        return archive.read(info)

    async def _extract(
        self,
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        file_type: ArchiveFileType,
        manifest: ArchiveManifest,
    ) -> ArchiveEntry:
        raw_bytes = await asyncio.to_thread(self._read_entry, archive, info)
        return ArchiveEntry(
            relative_path=info.filename,
            file_type=file_type,
            raw_bytes=raw_bytes,
            is_binary=file_type != ArchiveFileType.GPX,
            strava_name=manifest.lookup(info.filename),
        )

    async def iter_batches(
        self,
        source: ArchiveSource,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[List[ArchiveEntry]]:
        """Yield extracted entries one batch at a time.

        Args:
            source: Archive path, bytes or binary file object
            progress: Called after each batch with the number of entries processed
            cancel_event: When set, no further batches are started

        Raises:
            InvalidArchive: If the archive cannot be opened
        """
        archive = _open_archive(source)
        with archive:
            manifest = self.read_manifest(archive)
            candidates = self.list_candidates(archive)
            total = len(candidates)
            processed = 0

            for start in range(0, total, self.batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Extraction cancelled after {processed} of {total} entries")
                    return

                batch = candidates[start:start + self.batch_size]
                results = await asyncio.gather(
                    *[self._extract(archive, info, file_type, manifest) for info, file_type in batch],
                    return_exceptions=True,
                )

                entries = []
                for (info, _), result in zip(batch, results):
                    if isinstance(result, Exception):
                        logger.error(f"Failed to extract {info.filename}: {str(result)}")
                        continue
                    if isinstance(result, BaseException):
                        raise result
                    entries.append(result)

                processed += len(batch)
                await report_progress(progress, ImportProgress(
                    phase=ImportPhase.EXTRACTING,
                    current=processed,
                    total=total,
                    file_name=batch[-1][0].filename,
                ))
                yield entries

    async def extract_all(
        self,
        source: ArchiveSource,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[ArchiveEntry]:
        entries = []
        async for batch in self.iter_batches(source, progress, cancel_event):
            entries.extend(batch)
        return entries
