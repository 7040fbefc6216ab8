"""Encoded polyline format used by common map renderers.

Coordinates are scaled by 1e5, delta-encoded against the previous point and
written as 5-bit chunks (0x20 marks continuation) offset by 63.
"""

from typing import Iterable, Optional, Union

from activity_ingestion.models import TrackPoint

PRECISION = 1e5

Coordinate = tuple[float, float]


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


def encode_polyline(points: Iterable[Union[TrackPoint, Coordinate]]) -> Optional[str]:
    """Encode track points (or ``(lat, lon)`` pairs); returns None for an empty track."""
    encoded = []
    previous_lat = 0
    previous_lon = 0
    for point in points:
        if isinstance(point, TrackPoint):
            latitude, longitude = point.latitude, point.longitude
        else:
            latitude, longitude = point
        lat = int(round(latitude * PRECISION))
        lon = int(round(longitude * PRECISION))
        encoded.append(_encode_value(lat - previous_lat))
        encoded.append(_encode_value(lon - previous_lon))
        previous_lat, previous_lon = lat, lon
    return "".join(encoded) or None


def decode_polyline(encoded: Optional[str]) -> list[Coordinate]:
    if not encoded:
        return []

    coordinates = []
    index = 0
    lat = 0
    lon = 0
    length = len(encoded)
    while index < length:
        deltas = []
        for _ in range(2):
            result = 0
            shift = 0
            while True:
                if index >= length:
                    raise ValueError("Truncated polyline")
                byte = ord(encoded[index]) - 63
                index += 1
                result |= (byte & 0x1F) << shift
                shift += 5
                if byte < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lon += deltas[1]
        coordinates.append((lat / PRECISION, lon / PRECISION))
    return coordinates
