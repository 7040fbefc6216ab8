from datetime import datetime, timezone
import io
import logging
from typing import Any, Optional, List

from fitparse import FitFile, FitParseError
from pydantic import BaseModel, Field

from activity_ingestion.errors import DecodeError
from activity_ingestion.fields import as_utc, first_present, optional_float, optional_int
from activity_ingestion.geo import TrackAccumulator
from activity_ingestion.models import ActivityMetadata, Lap, TrackPoint

logger = logging.getLogger(__name__)

FIT_SIGNATURE = b".FIT"
SEMICIRCLES_TO_DEGREES = 180.0 / 2 ** 31
EARLIEST_VALID_YEAR = 2010

MESSAGE_TYPES = ("file_id", "session", "record", "lap", "activity")


class FitDecodeResult(BaseModel):
    """Messages of interest from a FIT file, as field-name to value mappings."""
    file_id: dict[str, Any] = Field(default_factory=dict)
    sessions: List[dict[str, Any]] = Field(default_factory=list)
    records: List[dict[str, Any]] = Field(default_factory=list)
    laps: List[dict[str, Any]] = Field(default_factory=list)
    activities: List[dict[str, Any]] = Field(default_factory=list)

    @property
    def session(self) -> Optional[dict[str, Any]]:
        return self.sessions[0] if self.sessions else None


def is_fit_payload(data: bytes) -> bool:
    return len(data) >= 12 and data[8:12] == FIT_SIGNATURE


def decode_fit(data: bytes) -> FitDecodeResult:
    """Decode a FIT byte stream into its file_id, session, record and lap messages.

    Args:
        data: Uncompressed FIT bytes

    Returns:
        FitDecodeResult holding every message of the supported types

    Raises:
        DecodeError: If the stream is not a FIT file, is truncated or fails its CRC.
            The error carries the byte offset where decoding stopped.
    """
    if not is_fit_payload(data):
        raise DecodeError("Invalid FIT file header", offset=min(len(data), 8))

    stream = io.BytesIO(data)
    grouped: dict[str, list[dict[str, Any]]] = {name: [] for name in MESSAGE_TYPES}
    try:
        fit_file = FitFile(stream)
        for message in fit_file.get_messages():
            if message.name in grouped:
                grouped[message.name].append(message.get_values())
    except FitParseError as e:
        raise DecodeError(f"Failed to parse FIT file: {e}", offset=_offset(stream)) from e
    except Exception as e:
        logger.debug(f"Unexpected error while decoding FIT stream: {e!r}")
        raise DecodeError(f"Failed to parse FIT file: {e}", offset=_offset(stream)) from e

    logger.debug(
        f"Decoded FIT file: {len(grouped['record'])} records, "
        f"{len(grouped['lap'])} laps, {len(grouped['session'])} sessions"
    )
    return FitDecodeResult(
        file_id=grouped["file_id"][0] if grouped["file_id"] else {},
        sessions=grouped["session"],
        records=grouped["record"],
        laps=grouped["lap"],
        activities=grouped["activity"],
    )


def _offset(stream: io.BytesIO) -> Optional[int]:
    return None if stream.closed else stream.tell()


def semicircles_to_degrees(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value) * SEMICIRCLES_TO_DEGREES


def _valid_start(value: Any) -> Optional[datetime]:
    start = as_utc(value)
    if start is None:
        return None
    latest_year = datetime.now(timezone.utc).year + 1
    if not EARLIEST_VALID_YEAR <= start.year <= latest_year:
        logger.warning(f"Ignoring implausible FIT start time {start.isoformat()}")
        return None
    return start


def extract_metadata(result: FitDecodeResult, file_name: Optional[str] = None) -> ActivityMetadata:
    session = result.session or {}
    activity = result.activities[0] if result.activities else {}
    first_record = result.records[0] if result.records else {}

    sport = session.get("sport")
    sport = str(sport) if sport is not None else None
    name = f"{sport.capitalize()} Activity" if sport else "FIT Activity"

    start_time = _valid_start(
        first_present(session, "start_time")
        or first_present(activity, "timestamp")
        or first_present(first_record, "timestamp")
    )

    manufacturer = result.file_id.get("manufacturer")
    product = first_present(result.file_id, "garmin_product", "product")
    sub_sport = session.get("sub_sport")
    return ActivityMetadata(
        name=name,
        start_time=start_time,
        sport=sport or "cycling",
        sub_sport=str(sub_sport) if sub_sport is not None else None,
        manufacturer=str(manufacturer) if manufacturer is not None else "Unknown",
        product=str(product) if product is not None else None,
        serial_number=optional_int(result.file_id.get("serial_number")),
        file_name=file_name,
    )


def extract_track_points(records: List[dict[str, Any]]) -> List[TrackPoint]:
    """Build track points from record messages.

    Records without a position are skipped. Device speed and distance are
    preferred; segment values computed from positions fill the gaps.
    """
    accumulator = TrackAccumulator()
    track_points = []
    for record in records:
        latitude = semicircles_to_degrees(record.get("position_lat"))
        longitude = semicircles_to_degrees(record.get("position_long"))
        if latitude is None or longitude is None:
            continue
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            continue

        timestamp = as_utc(record.get("timestamp"))
        recorded_distance = optional_float(record.get("distance"))
        cumulative_distance, computed_speed = accumulator.advance(
            latitude, longitude, timestamp, recorded_distance
        )
        device_speed = optional_float(first_present(record, "enhanced_speed", "speed"))

        track_points.append(TrackPoint(
            latitude=latitude,
            longitude=longitude,
            elevation=optional_float(first_present(record, "enhanced_altitude", "altitude")),
            timestamp=timestamp,
            heart_rate=optional_int(record.get("heart_rate")),
            power=optional_int(record.get("power")),
            cadence=optional_int(record.get("cadence")),
            speed=device_speed * 3.6 if device_speed is not None else computed_speed,
            temperature=optional_float(record.get("temperature")),
            cumulative_distance=cumulative_distance,
        ))
    return track_points


def _speed_kmh(value: Any) -> Optional[float]:
    value = optional_float(value)
    return value * 3.6 if value is not None else None


def extract_laps(laps: List[dict[str, Any]]) -> List[Lap]:
    extracted = []
    for index, lap in enumerate(laps):
        distance = optional_float(lap.get("total_distance"))
        extracted.append(Lap(
            lap_number=index + 1,
            start_time=as_utc(lap.get("start_time")),
            distance=distance / 1000 if distance else 0.0,
            duration=optional_float(first_present(lap, "total_timer_time", "total_elapsed_time")) or 0.0,
            average_speed=_speed_kmh(first_present(lap, "enhanced_avg_speed", "avg_speed")),
            max_speed=_speed_kmh(first_present(lap, "enhanced_max_speed", "max_speed")),
            average_heartrate=optional_int(lap.get("avg_heart_rate")),
            max_heartrate=optional_int(lap.get("max_heart_rate")),
            average_power=optional_int(lap.get("avg_power")),
            max_power=optional_int(lap.get("max_power")),
            average_cadence=optional_int(lap.get("avg_cadence")),
            max_cadence=optional_int(lap.get("max_cadence")),
            ascent=optional_float(lap.get("total_ascent")),
            descent=optional_float(lap.get("total_descent")),
        ))
    return extracted
