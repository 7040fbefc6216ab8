"""Activity file ingestion and normalization for Kinetic AI services."""

from activity_ingestion.archive import ArchiveExtractor
from activity_ingestion.decoders import decode_activity, detect_format
from activity_ingestion.duplicates import DuplicateDetector, DuplicatePolicy
from activity_ingestion.models import (
    CanonicalActivity,
    ImportOutcome,
    ImportProgress,
    ImportReport,
    UploadedFile,
)
from activity_ingestion.orchestrator import BatchImportOrchestrator

__version__ = "0.1.0"

__all__ = [
    'ArchiveExtractor',
    'BatchImportOrchestrator',
    'CanonicalActivity',
    'DuplicateDetector',
    'DuplicatePolicy',
    'ImportOutcome',
    'ImportProgress',
    'ImportReport',
    'UploadedFile',
    'decode_activity',
    'detect_format',
]
