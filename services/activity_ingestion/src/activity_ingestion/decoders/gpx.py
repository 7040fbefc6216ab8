"""GPX track decoding.

Track points are read from ``<trkpt>`` elements, or ``<rtept>`` when a file
only holds a route. Vendor extensions (Garmin TrackPointExtension v1/v2 and
similar) are matched by local element name so any namespace prefix works.
"""

from datetime import datetime
import logging
import re
from typing import Optional, Union, List

from lxml import etree
from pydantic import BaseModel, Field

from activity_ingestion.errors import InvalidFormat
from activity_ingestion.fields import as_utc, optional_float
from activity_ingestion.geo import TrackAccumulator
from activity_ingestion.models import ActivityMetadata, TrackPoint

logger = logging.getLogger(__name__)

EXTENSION_FIELDS = {
    "hr": "heart_rate",
    "heartrate": "heart_rate",
    "cad": "cadence",
    "cadence": "cadence",
    "power": "power",
    "watts": "power",
    "atemp": "temperature",
    "temp": "temperature",
}

SPORT_KEYWORDS = (
    (("run", "jog"), "running"),
    (("walk", "hike"), "walking"),
    (("swim",), "swimming"),
)
DEFAULT_SPORT = "cycling"

# fromisoformat before 3.11 only takes 3 or 6 fractional digits
FRACTION_PATTERN = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


class GpxDecodeResult(BaseModel):
    metadata: ActivityMetadata
    track_points: List[TrackPoint] = Field(default_factory=list)
    description: Optional[str] = None


def infer_sport(text: Optional[str]) -> str:
    """Classify free text (activity name and description) into a sport.

    Falls back to cycling when no keyword matches.
    """
    lowered = (text or "").lower()
    for keywords, sport in SPORT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return sport
    return DEFAULT_SPORT


def _local_name(element) -> Optional[str]:
    if not isinstance(element.tag, str):
        return None
    return etree.QName(element).localname


def _child(element, name: str):
    if element is None:
        return None
    for child in element:
        if _local_name(child) == name:
            return child
    return None


def _child_text(element, name: str) -> Optional[str]:
    child = _child(element, name)
    if child is None or child.text is None:
        return None
    return child.text.strip() or None


def parse_time(text: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 GPX timestamp; fractional seconds of any precision are accepted."""
    if not text:
        return None
    normalized = FRACTION_PATTERN.sub(
        lambda match: match.group(1) + "." + match.group(2).ljust(6, "0")[:6],
        text.strip().replace("Z", "+00:00"),
    )
    try:
        return as_utc(datetime.fromisoformat(normalized))
    except ValueError:
        logger.debug(f"Unparseable GPX timestamp: {text}")
        return None


def _read_extensions(point) -> dict[str, float]:
    values: dict[str, float] = {}
    extensions = _child(point, "extensions")
    if extensions is None:
        return values
    for element in extensions.iter():
        field = EXTENSION_FIELDS.get((_local_name(element) or "").lower())
        if field is None or field in values:
            continue
        value = optional_float(element.text.strip() if element.text else None)
        if value is not None:
            values[field] = value
    return values


def _round_or_none(value: Optional[float]) -> Optional[int]:
    return round(value) if value is not None else None


def strip_gpx_suffix(file_name: str) -> str:
    return re.sub(r"\.gpx(\.gz)?$", "", file_name, flags=re.IGNORECASE)


def decode_gpx(content: Union[str, bytes], file_name: str = "activity.gpx") -> GpxDecodeResult:
    """Parse a GPX document into metadata and track points.

    Args:
        content: GPX XML as text or UTF-8 bytes
        file_name: Original file name, used when the document has no name

    Returns:
        GpxDecodeResult; documents without any points produce an empty track

    Raises:
        InvalidFormat: If the document is not well-formed XML
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)
    try:
        root = etree.fromstring(content, parser=parser)
    except etree.XMLSyntaxError as e:
        raise InvalidFormat(f"Invalid GPX file format: {e}") from e
    if root is None:
        raise InvalidFormat("Invalid GPX file format: empty document")

    metadata_element = _child(root, "metadata")
    track = _child(root, "trk")

    name = (
        _child_text(metadata_element, "name")
        or _child_text(track, "name")
        or strip_gpx_suffix(file_name.rsplit("/", 1)[-1])
    )
    description = _child_text(metadata_element, "desc") or _child_text(track, "desc") or ""

    points = list(root.iter("{*}trkpt"))
    if not points:
        points = list(root.iter("{*}rtept"))

    accumulator = TrackAccumulator()
    track_points = []
    first_point_time = None
    for point in points:
        latitude = optional_float(point.get("lat"))
        longitude = optional_float(point.get("lon"))
        if latitude is None or longitude is None:
            continue
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            continue

        timestamp = parse_time(_child_text(point, "time"))
        if first_point_time is None and timestamp is not None:
            first_point_time = timestamp
        cumulative_distance, speed = accumulator.advance(latitude, longitude, timestamp)
        extensions = _read_extensions(point)

        track_points.append(TrackPoint(
            latitude=latitude,
            longitude=longitude,
            elevation=optional_float(_child_text(point, "ele")),
            timestamp=timestamp,
            heart_rate=_round_or_none(extensions.get("heart_rate")),
            power=_round_or_none(extensions.get("power")),
            cadence=_round_or_none(extensions.get("cadence")),
            speed=speed,
            temperature=extensions.get("temperature"),
            cumulative_distance=cumulative_distance,
        ))

    start_time = parse_time(_child_text(metadata_element, "time")) or first_point_time
    if not track_points:
        logger.info(f"GPX file {file_name} contains no track points")

    metadata = ActivityMetadata(
        name=name,
        start_time=start_time,
        sport=infer_sport(f"{name} {description}"),
        manufacturer=root.get("creator") or "Unknown",
        file_name=file_name,
    )
    return GpxDecodeResult(metadata=metadata, track_points=track_points, description=description or None)
