"""Geodesy and track arithmetic shared by the FIT and GPX decoders."""

from datetime import datetime
import math
from typing import Optional, Sequence

EARTH_RADIUS_M = 6371000.0
MAX_SEGMENT_GAP_SECONDS = 300.0
MAX_PLAUSIBLE_SPEED_KMH = 150.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates, in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def smooth_elevation(values: Sequence[float], window_size: int = 5) -> list[float]:
    """Centered moving average used to suppress GPS altitude noise.

    The window shrinks at both ends of the series instead of padding it.
    Series shorter than the window are returned as-is.
    """
    if len(values) < window_size:
        return list(values)

    half = window_size // 2
    smoothed = []
    for i in range(len(values)):
        window = values[max(0, i - half):min(len(values), i + half + 1)]
        smoothed.append(sum(window) / len(window))
    return smoothed


def segment_seconds(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """Duration of a segment, or None when it is untimed or a pause."""
    if start is None or end is None:
        return None
    delta = (end - start).total_seconds()
    if 0 < delta <= MAX_SEGMENT_GAP_SECONDS:
        return delta
    return None


def segment_speed(distance_m: float, start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """Speed over a segment in km/h, or None if it cannot be trusted."""
    seconds = segment_seconds(start, end)
    if seconds is None:
        return None
    speed = (distance_m / 1000) / (seconds / 3600)
    if speed >= MAX_PLAUSIBLE_SPEED_KMH:
        return None
    return speed


class TrackAccumulator:
    """Builds cumulative distance and segment speed while points are scanned.

    Decoders feed points in order; each call only looks at the previous point,
    so a whole track is processed in a single pass.
    """

    def __init__(self) -> None:
        self.distance = 0.0
        self._last: Optional[tuple[float, float, Optional[datetime]]] = None

    def advance(
        self,
        latitude: float,
        longitude: float,
        timestamp: Optional[datetime],
        recorded_distance: Optional[float] = None,
    ) -> tuple[float, Optional[float]]:
        """Register the next point.

        Args:
            latitude: Point latitude in degrees
            longitude: Point longitude in degrees
            timestamp: Point time, if recorded
            recorded_distance: Device-recorded cumulative distance in meters

        Returns:
            Tuple of (cumulative distance in meters, segment speed in km/h or None)
        """
        speed = None
        if self._last is not None:
            prev_lat, prev_lon, prev_time = self._last
            segment = haversine_distance(prev_lat, prev_lon, latitude, longitude)
            if recorded_distance is not None:
                self.distance = recorded_distance
            else:
                self.distance += segment
            speed = segment_speed(segment, prev_time, timestamp)
        elif recorded_distance is not None:
            self.distance = recorded_distance
        self._last = (latitude, longitude, timestamp)
        return self.distance, speed
