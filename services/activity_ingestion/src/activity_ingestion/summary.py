"""Activity summary computation.

Device-recorded session aggregates are authoritative and copied as they are;
recomputing them from samples would drift from the device's own averaging.
When a file carries no session (GPX, or FIT without a session message) every
field is derived from the track points instead.
"""

import logging
from statistics import mean
from typing import Any, Mapping, Optional, Sequence

from activity_ingestion.fields import first_present, optional_float, optional_int
from activity_ingestion.geo import MAX_PLAUSIBLE_SPEED_KMH, segment_seconds, smooth_elevation
from activity_ingestion.models import ActivitySummary, TrackPoint

logger = logging.getLogger(__name__)

MIN_MOVING_SPEED_KMH = 1.0
ESTIMATED_MOVING_RATIO = 0.9


def compute_summary(
    track_points: Sequence[TrackPoint],
    session: Optional[Mapping[str, Any]] = None,
) -> ActivitySummary:
    if session:
        return summary_from_session(session)
    return derive_summary(track_points)


def summary_from_session(session: Mapping[str, Any]) -> ActivitySummary:
    """Copy a FIT session message into an ActivitySummary, converting units only."""
    distance = optional_float(session.get("total_distance"))
    average_speed = optional_float(first_present(session, "enhanced_avg_speed", "avg_speed"))
    max_speed = optional_float(first_present(session, "enhanced_max_speed", "max_speed"))

    return ActivitySummary(
        total_distance=distance / 1000 if distance else 0.0,
        moving_time=optional_float(first_present(session, "total_moving_time", "total_timer_time")) or 0.0,
        elapsed_time=optional_float(session.get("total_elapsed_time")) or 0.0,
        ascent=optional_float(session.get("total_ascent")) or 0.0,
        descent=optional_float(session.get("total_descent")) or 0.0,
        average_speed=average_speed * 3.6 if average_speed else 0.0,
        max_speed=max_speed * 3.6 if max_speed else 0.0,
        average_heartrate=optional_int(session.get("avg_heart_rate")),
        max_heartrate=optional_int(session.get("max_heart_rate")),
        average_power=optional_int(session.get("avg_power")),
        max_power=optional_int(session.get("max_power")),
        normalized_power=optional_int(session.get("normalized_power")),
        average_cadence=optional_int(session.get("avg_cadence")),
        max_cadence=optional_int(session.get("max_cadence")),
        calories=optional_int(session.get("total_calories")),
        training_stress_score=optional_float(session.get("training_stress_score")),
        intensity_factor=optional_float(session.get("intensity_factor")),
    )


def _channel_stats(values: list[int]) -> tuple[Optional[int], Optional[int]]:
    if not values:
        return None, None
    return round(mean(values)), max(values)


def derive_summary(track_points: Sequence[TrackPoint]) -> ActivitySummary:
    """Derive every summary field from track points."""
    if len(track_points) < 2:
        return ActivitySummary()

    total_distance = track_points[-1].cumulative_distance

    smoothed = smooth_elevation([p.elevation for p in track_points if p.elevation is not None])
    ascent = 0.0
    descent = 0.0
    for previous, current in zip(smoothed, smoothed[1:]):
        diff = current - previous
        if diff > 0:
            ascent += diff
        else:
            descent -= diff

    timestamps = [p.timestamp for p in track_points if p.timestamp is not None]
    elapsed_time = (timestamps[-1] - timestamps[0]).total_seconds() if timestamps else 0.0

    moving_time = 0.0
    speeds = []
    max_speed = 0.0
    for previous, current in zip(track_points, track_points[1:]):
        if current.speed is not None:
            speeds.append(current.speed)
            if max_speed < current.speed < MAX_PLAUSIBLE_SPEED_KMH:
                max_speed = current.speed

        seconds = segment_seconds(previous.timestamp, current.timestamp)
        if seconds is None:
            continue
        if current.speed is None or current.speed >= MIN_MOVING_SPEED_KMH:
            moving_time += seconds

    if moving_time == 0 and total_distance > 0 and elapsed_time > 0:
        logger.debug("No moving segments found, estimating moving time from elapsed time")
        moving_time = elapsed_time * ESTIMATED_MOVING_RATIO

    distance_km = total_distance / 1000
    if moving_time > 0:
        average_speed = distance_km / (moving_time / 3600)
    elif speeds:
        average_speed = mean(speeds)
    else:
        average_speed = 0.0

    average_heartrate, max_heartrate = _channel_stats(
        [p.heart_rate for p in track_points if p.heart_rate is not None]
    )
    average_power, max_power = _channel_stats([p.power for p in track_points if p.power is not None])
    average_cadence, max_cadence = _channel_stats(
        [p.cadence for p in track_points if p.cadence is not None]
    )

    return ActivitySummary(
        total_distance=distance_km,
        moving_time=round(moving_time),
        elapsed_time=round(elapsed_time),
        ascent=round(ascent),
        descent=round(descent),
        average_speed=round(average_speed, 1),
        max_speed=round(max_speed, 1),
        average_heartrate=average_heartrate,
        max_heartrate=max_heartrate,
        average_power=average_power,
        max_power=max_power,
        average_cadence=average_cadence,
        max_cadence=max_cadence,
    )
