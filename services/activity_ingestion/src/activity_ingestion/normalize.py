from datetime import datetime, timezone
import logging
import math
import re
from typing import Any, Optional
import uuid

from activity_ingestion.models import CanonicalActivity

logger = logging.getLogger(__name__)

FIT_PROVIDER = ("fit_upload", "fit")
GPX_PROVIDER = ("gpx_import", "gpx")

ACTIVITY_TYPES = {
    "cycling": "Ride",
    "biking": "Ride",
    "running": "Run",
    "walking": "Walk",
    "swimming": "Swim",
}

# Upper bounds for values persisted on an activity record
MAX_DISTANCE_M = 500_000
MAX_MOVING_TIME_S = 86_400
MAX_ELAPSED_TIME_S = 172_800
MAX_ELEVATION_GAIN_M = 6_000
MAX_AVERAGE_SPEED_MS = 30
MAX_SPEED_MS = 50
MAX_POWER_W = 2_000
MAX_HEARTRATE_BPM = 250


def sanitize(value: Optional[float], maximum: float, default: Any = None) -> Any:
    if value is None or math.isnan(value) or value < 0 or value > maximum:
        return default
    return value


def activity_type(sport: Optional[str]) -> str:
    if not sport:
        return "Ride"
    return ACTIVITY_TYPES.get(sport.lower(), sport.capitalize())


def provider_activity_id(prefix: str, start_time: Optional[datetime]) -> str:
    """Synthesize a provider id of the form ``{prefix}_{epoch-ms}_{suffix}``."""
    moment = start_time or datetime.now(timezone.utc)
    return f"{prefix}_{int(moment.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def _is_generic_name(name: str) -> bool:
    return name == "FIT Activity" or name.endswith(" Activity")


def resolve_name(
    activity: CanonicalActivity,
    file_name: Optional[str] = None,
    strava_name: Optional[str] = None,
) -> str:
    """Pick the display name for an activity.

    A name from the export manifest wins. Otherwise FIT files with a generic
    "<Sport> Activity" name are renamed after the file: numeric Strava-style
    file names become "<Sport> - <date>", other names are cleaned up.
    """
    if strava_name:
        return strava_name

    name = activity.metadata.name
    if not file_name or not activity.source_format.is_fit or not _is_generic_name(name):
        return name

    clean_name = re.sub(r"\.fit(\.gz)?$", "", file_name, flags=re.IGNORECASE).rsplit("/", 1)[-1]
    if clean_name.isdigit():
        date = activity.metadata.start_time or datetime.now(timezone.utc)
        sport = (activity.metadata.sport or "cycling").capitalize()
        return f"{sport} - {date.strftime('%A, %b')} {date.day}, {date.year}"

    clean_name = re.sub(r"\s+", " ", re.sub(r"[-_]", " ", clean_name)).strip()
    return clean_name or name


def _raw_data(activity: CanonicalActivity, source: str, file_name: Optional[str]) -> dict[str, Any]:
    metadata = activity.metadata
    summary = activity.summary
    if activity.source_format.is_fit:
        return {
            "source": source,
            "device": metadata.manufacturer,
            "product": metadata.product,
            "serial_number": metadata.serial_number,
            "sub_sport": metadata.sub_sport,
            "max_watts": summary.max_power,
            "normalized_power": summary.normalized_power,
            "average_cadence": summary.average_cadence,
            "max_cadence": summary.max_cadence,
            "calories": summary.calories,
            "training_stress_score": summary.training_stress_score,
            "intensity_factor": summary.intensity_factor,
            "total_descent": summary.descent,
            "laps": [lap.model_dump(mode="json") for lap in activity.laps],
        }
    return {
        "source": source,
        "creator": metadata.manufacturer,
        "original_filename": file_name or metadata.file_name,
        "max_speed": summary.max_speed / 3.6 if summary.max_speed else None,
        "average_cadence": summary.average_cadence,
        "max_cadence": summary.max_cadence,
        "total_descent": summary.descent,
        "track_point_count": len(activity.track_points),
    }


def to_activity_record(
    activity: CanonicalActivity,
    user_id: Optional[str] = None,
    file_name: Optional[str] = None,
    strava_name: Optional[str] = None,
) -> dict[str, Any]:
    """Convert a CanonicalActivity into the record handed to persistence.

    Distances are in meters, speeds in m/s and times in whole seconds. Values
    outside plausible bounds are replaced by defaults rather than stored.
    """
    source, prefix = FIT_PROVIDER if activity.source_format.is_fit else GPX_PROVIDER
    metadata = activity.metadata
    summary = activity.summary

    moving_time = sanitize(round(summary.moving_time), MAX_MOVING_TIME_S, 0)
    elapsed_time = sanitize(
        round(summary.elapsed_time or summary.moving_time), MAX_ELAPSED_TIME_S, moving_time
    )
    average_watts = sanitize(summary.average_power, MAX_POWER_W)
    start_date = metadata.start_time.isoformat() if metadata.start_time else None

    return {
        "user_id": user_id,
        "provider": source,
        "provider_activity_id": provider_activity_id(prefix, metadata.start_time),
        "name": resolve_name(activity, file_name, strava_name),
        "type": activity_type(metadata.sport),
        "sport_type": metadata.sport or "cycling",
        "start_date": start_date,
        "start_date_local": start_date,
        "distance": sanitize(summary.total_distance * 1000, MAX_DISTANCE_M, 0),
        "moving_time": moving_time,
        "elapsed_time": elapsed_time,
        "total_elevation_gain": sanitize(summary.ascent, MAX_ELEVATION_GAIN_M, 0),
        "average_speed": sanitize(summary.average_speed / 3.6, MAX_AVERAGE_SPEED_MS),
        "max_speed": sanitize(summary.max_speed / 3.6, MAX_SPEED_MS),
        "average_watts": average_watts,
        # mechanical work from power, not metabolic calories
        "kilojoules": round(average_watts * moving_time / 1000) if average_watts and moving_time else None,
        "average_heartrate": sanitize(summary.average_heartrate, MAX_HEARTRATE_BPM),
        "max_heartrate": sanitize(summary.max_heartrate, MAX_HEARTRATE_BPM),
        "average_cadence": summary.average_cadence,
        "trainer": False,
        "commute": False,
        "map_summary_polyline": activity.encoded_polyline,
        "raw_data": _raw_data(activity, source, file_name),
    }
