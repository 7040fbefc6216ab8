from datetime import datetime
from enum import Enum
from typing import Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field


class SourceFormat(str, Enum):
    FIT = "fit"
    FIT_GZ = "fit_gz"
    GPX = "gpx"
    GPX_GZ = "gpx_gz"

    @property
    def is_fit(self) -> bool:
        return self in (SourceFormat.FIT, SourceFormat.FIT_GZ)

    @property
    def is_compressed(self) -> bool:
        return self in (SourceFormat.FIT_GZ, SourceFormat.GPX_GZ)


class ArchiveFileType(str, Enum):
    FIT = "fit"
    FIT_GZ = "fit.gz"
    GPX = "gpx"
    GPX_GZ = "gpx.gz"
    TCX = "tcx"
    OTHER = "other"

    @property
    def is_supported(self) -> bool:
        return self not in (ArchiveFileType.TCX, ArchiveFileType.OTHER)


class TrackPoint(BaseModel):
    """A single positioned sample of an activity."""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    elevation: Optional[float] = None
    timestamp: Optional[datetime] = None
    heart_rate: Optional[int] = None
    power: Optional[int] = None
    cadence: Optional[int] = None
    speed: Optional[float] = None  # km/h
    temperature: Optional[float] = None
    cumulative_distance: float = 0.0  # meters


class Lap(BaseModel):
    lap_number: int
    start_time: Optional[datetime] = None
    distance: float = 0.0  # km
    duration: float = 0.0  # seconds
    average_speed: Optional[float] = None  # km/h
    max_speed: Optional[float] = None
    average_heartrate: Optional[int] = None
    max_heartrate: Optional[int] = None
    average_power: Optional[int] = None
    max_power: Optional[int] = None
    average_cadence: Optional[int] = None
    max_cadence: Optional[int] = None
    ascent: Optional[float] = None
    descent: Optional[float] = None


class ActivitySummary(BaseModel):
    """Activity-wide aggregates. Distances in km, speeds in km/h, times in seconds."""
    total_distance: float = 0.0
    moving_time: float = 0.0
    elapsed_time: float = 0.0
    ascent: float = 0.0
    descent: float = 0.0
    average_speed: float = 0.0
    max_speed: float = 0.0
    average_heartrate: Optional[int] = None
    max_heartrate: Optional[int] = None
    average_power: Optional[int] = None
    max_power: Optional[int] = None
    normalized_power: Optional[int] = None
    average_cadence: Optional[int] = None
    max_cadence: Optional[int] = None
    calories: Optional[int] = None
    training_stress_score: Optional[float] = None
    intensity_factor: Optional[float] = None


class ActivityMetadata(BaseModel):
    name: str
    start_time: Optional[datetime] = None
    sport: str = "cycling"
    sub_sport: Optional[str] = None
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[int] = None
    file_name: Optional[str] = None


class CanonicalActivity(BaseModel):
    """Normalized result of decoding one activity file."""
    model_config = ConfigDict(frozen=True)

    source_format: SourceFormat
    metadata: ActivityMetadata
    summary: ActivitySummary
    track_points: List[TrackPoint] = Field(default_factory=list)
    laps: List[Lap] = Field(default_factory=list)
    encoded_polyline: Optional[str] = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class ArchiveEntry(BaseModel):
    relative_path: str
    file_type: ArchiveFileType
    raw_bytes: bytes
    is_binary: bool
    strava_name: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.relative_path.rsplit("/", 1)[-1]


class UploadedFile(BaseModel):
    """A file handed to the importer directly rather than through an archive."""
    file_name: str
    content: bytes
    strava_name: Optional[str] = None


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ImportOutcome(BaseModel):
    status: OutcomeStatus
    file_name: str
    reason: Optional[str] = None
    activity: Optional[CanonicalActivity] = None
    record: Optional[dict[str, Any]] = None

    @classmethod
    def success(cls, file_name: str, activity: CanonicalActivity, record: dict[str, Any]) -> "ImportOutcome":
        return cls(status=OutcomeStatus.SUCCESS, file_name=file_name, activity=activity, record=record)

    @classmethod
    def skipped(cls, file_name: str, reason: str) -> "ImportOutcome":
        return cls(status=OutcomeStatus.SKIPPED, file_name=file_name, reason=reason)

    @classmethod
    def failed(cls, file_name: str, error: str) -> "ImportOutcome":
        return cls(status=OutcomeStatus.FAILED, file_name=file_name, reason=error)


class ImportReport(BaseModel):
    success: List[ImportOutcome] = Field(default_factory=list)
    skipped: List[ImportOutcome] = Field(default_factory=list)
    failed: List[ImportOutcome] = Field(default_factory=list)

    def add(self, outcome: ImportOutcome) -> None:
        getattr(self, outcome.status.value).append(outcome)

    @property
    def total(self) -> int:
        return len(self.success) + len(self.skipped) + len(self.failed)

    def counts(self) -> dict[str, int]:
        return {
            "success": len(self.success),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class ImportPhase(str, Enum):
    EXTRACTING = "extracting"
    IMPORTING = "importing"


class ImportProgress(BaseModel):
    phase: ImportPhase
    current: int
    total: int
    file_name: Optional[str] = None


class ImportStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportStatusResponse(BaseModel):
    batch_id: str
    status: ImportStatus
    total_files: int = 0
    processed_files: int = 0
    imported_files: int = 0
    skipped_files: int = 0
    failed_files: int = 0
    current_file: Optional[str] = None
    error_message: Optional[str] = None
    last_updated: datetime
