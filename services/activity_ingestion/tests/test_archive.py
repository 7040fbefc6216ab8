import asyncio
import gzip
import io
import threading
import time
import zipfile
import pytest

from activity_ingestion.archive import ArchiveExtractor, classify_entry, parse_manifest
from activity_ingestion.errors import InvalidArchive
from activity_ingestion.models import ArchiveFileType, ImportPhase

from conftest import build_fit_activity, build_gpx

MANIFEST = (
    "Activity ID,Activity Date,Activity Name,Activity Type,Activity Description,Filename\n"
    '1001,"Jun 3, 2024, 8:00:00 AM","Col du Galibier, the hard way",Ride,,activities/1001.fit.gz\n'
    '1002,"Jun 4, 2024, 8:00:00 AM",Recovery spin,Ride,,activities/1002.fit.gz\n'
    '1003,"Jun 5, 2024, 8:00:00 AM",Tempo,Ride,,activities/1003.fit.gz\n'
    '1004,"Jun 6, 2024, 8:00:00 AM",Track session,Run,,activities/1004.gpx\n'
)


def make_archive(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries:
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def strava_export():
    fit_gz = gzip.compress(build_fit_activity())
    return make_archive([
        ("activities.csv", MANIFEST),
        ("activities/1001.fit.gz", fit_gz),
        ("media/photo1.jpg", b"\xff\xd8\xff\xe0"),
        ("activities/1002.fit.gz", fit_gz),
        ("media/photo2.jpg", b"\xff\xd8\xff\xe0"),
        ("activities/1003.fit.gz", fit_gz),
    ])


class CountingExtractor(ArchiveExtractor):
    """Tracks how many entries are being read at the same time."""

    def __init__(self, batch_size, fail_on=()):
        super().__init__(batch_size=batch_size)
        self.fail_on = set(fail_on)
        self.active = 0
        self.max_active = 0
        self.reads = []
        self._lock = threading.Lock()

    def _read_entry(self, archive, info):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.reads.append(info.filename)
        try:
            time.sleep(0.02)
            if info.filename in self.fail_on:
                raise OSError("corrupt entry")
            return super()._read_entry(archive, info)
        finally:
            with self._lock:
                self.active -= 1


@pytest.mark.parametrize("path,file_type", [
    ("activities/1.fit", ArchiveFileType.FIT),
    ("activities/1.FIT.GZ", ArchiveFileType.FIT_GZ),
    ("activities/1.gpx", ArchiveFileType.GPX),
    ("activities/1.gpx.gz", ArchiveFileType.GPX_GZ),
    ("activities/1.tcx.gz", ArchiveFileType.TCX),
    ("media/1.jpg", ArchiveFileType.OTHER),
])
def test_classify_entry(path, file_type):
    assert classify_entry(path) == file_type


def test_parse_manifest_handles_quoted_commas():
    manifest = parse_manifest(MANIFEST)
    assert len(manifest) == 4
    assert manifest.lookup("activities/1001.fit.gz") == "Col du Galibier, the hard way"
    assert manifest.lookup("1004.gpx") == "Track session"
    assert manifest.lookup("activities/9999.fit") is None


def test_parse_manifest_without_known_headers_uses_positions():
    manifest = parse_manifest("id,date,title\n42,2024-06-03,Lunch ride\nbad,row\n")
    assert manifest.lookup("42.fit") == "Lunch ride"
    assert len(manifest) == 1


def test_parse_manifest_empty():
    assert len(parse_manifest("")) == 0


@pytest.mark.asyncio
async def test_extracts_activity_files_with_manifest_names(strava_export):
    entries = await ArchiveExtractor(batch_size=20).extract_all(strava_export)

    assert [entry.relative_path for entry in entries] == [
        "activities/1001.fit.gz",
        "activities/1002.fit.gz",
        "activities/1003.fit.gz",
    ]
    assert [entry.strava_name for entry in entries] == [
        "Col du Galibier, the hard way",
        "Recovery spin",
        "Tempo",
    ]
    assert all(entry.file_type == ArchiveFileType.FIT_GZ and entry.is_binary for entry in entries)
    assert entries[0].file_name == "1001.fit.gz"


@pytest.mark.asyncio
async def test_gpx_entries_are_text():
    archive = make_archive([("activities/1004.gpx", build_gpx()), ("activities/notes.tcx", "<x/>")])
    entries = await ArchiveExtractor().extract_all(archive)
    assert len(entries) == 1
    assert entries[0].is_binary is False
    assert entries[0].strava_name is None


@pytest.mark.asyncio
async def test_concurrent_reads_bounded_by_batch_size():
    archive = make_archive([(f"activities/{i}.fit", b"x" * 16) for i in range(7)])
    extractor = CountingExtractor(batch_size=3)
    progress = []

    entries = await extractor.extract_all(archive, progress=progress.append)

    assert len(entries) == 7
    assert 1 <= extractor.max_active <= 3
    assert [(p.phase, p.current, p.total) for p in progress] == [
        (ImportPhase.EXTRACTING, 3, 7),
        (ImportPhase.EXTRACTING, 6, 7),
        (ImportPhase.EXTRACTING, 7, 7),
    ]


@pytest.mark.asyncio
async def test_failed_entries_are_dropped():
    archive = make_archive([(f"activities/{i}.fit", b"x") for i in range(4)])
    extractor = CountingExtractor(batch_size=2, fail_on={"activities/1.fit"})

    entries = await extractor.extract_all(archive)

    assert [entry.relative_path for entry in entries] == [
        "activities/0.fit",
        "activities/2.fit",
        "activities/3.fit",
    ]


@pytest.mark.asyncio
async def test_cancellation_stops_after_current_batch():
    archive = make_archive([(f"activities/{i}.fit", b"x") for i in range(6)])
    extractor = CountingExtractor(batch_size=2)
    cancel_event = asyncio.Event()

    async def cancel_after_first_batch(progress):
        cancel_event.set()

    entries = await extractor.extract_all(archive, progress=cancel_after_first_batch, cancel_event=cancel_event)

    assert len(entries) == 2
    assert extractor.reads == ["activities/0.fit", "activities/1.fit"]


@pytest.mark.asyncio
async def test_unreadable_archive_raises():
    with pytest.raises(InvalidArchive):
        await ArchiveExtractor().extract_all(b"this is not a zip file")


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        ArchiveExtractor(batch_size=-1)
