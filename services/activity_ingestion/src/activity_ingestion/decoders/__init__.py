"""Format detection and decoding of activity files into CanonicalActivity."""

import gzip
import logging
from typing import Optional
import zlib

from activity_ingestion.decoders.fit import (
    decode_fit,
    extract_laps,
    extract_metadata,
    extract_track_points,
    is_fit_payload,
)
from activity_ingestion.decoders.gpx import decode_gpx, infer_sport
from activity_ingestion.errors import DecodeError, UnsupportedFormat
from activity_ingestion.models import CanonicalActivity, SourceFormat
from activity_ingestion.polyline import encode_polyline
from activity_ingestion.summary import compute_summary

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

SUFFIX_FORMATS = (
    (".fit.gz", SourceFormat.FIT_GZ),
    (".fit", SourceFormat.FIT),
    (".gpx.gz", SourceFormat.GPX_GZ),
    (".gpx", SourceFormat.GPX),
)


def _looks_like_gpx(data: bytes) -> bool:
    head = data[:2048].lstrip(b"\xef\xbb\xbf \t\r\n")
    return head.startswith(b"<") and b"<gpx" in head


def _sniff(data: bytes) -> Optional[SourceFormat]:
    if is_fit_payload(data):
        return SourceFormat.FIT
    if _looks_like_gpx(data):
        return SourceFormat.GPX
    return None


def detect_format(file_name: str, payload: bytes) -> SourceFormat:
    """Determine the source format from the file suffix, then from the content.

    Raises:
        UnsupportedFormat: If neither the name nor the content is recognized
    """
    lower = file_name.lower()
    for suffix, source_format in SUFFIX_FORMATS:
        if lower.endswith(suffix):
            return source_format

    if payload[:2] == GZIP_MAGIC:
        try:
            inner = _sniff(gzip.decompress(payload))
        except (OSError, EOFError, zlib.error):
            inner = None
        if inner is SourceFormat.FIT:
            return SourceFormat.FIT_GZ
        if inner is SourceFormat.GPX:
            return SourceFormat.GPX_GZ
    else:
        sniffed = _sniff(payload)
        if sniffed is not None:
            return sniffed

    raise UnsupportedFormat(f"Unsupported file type: {file_name}")


def unwrap_payload(payload: bytes) -> bytes:
    """Strip gzip compression if the payload carries it."""
    if payload[:2] != GZIP_MAGIC:
        return payload
    try:
        return gzip.decompress(payload)
    except (OSError, EOFError, zlib.error) as e:
        raise DecodeError(f"Failed to decompress file: {e}") from e


def decode_activity(
    payload: bytes,
    file_name: str,
    source_format: Optional[SourceFormat] = None,
) -> CanonicalActivity:
    """Decode one activity file into a CanonicalActivity.

    Args:
        payload: Raw file bytes, optionally gzip-compressed
        file_name: Original file name, used for format detection and naming
        source_format: Known format, skips detection when given

    Raises:
        UnsupportedFormat: If the format is not recognized
        DecodeError: If the payload is corrupt
    """
    if source_format is None:
        source_format = detect_format(file_name, payload)
    data = unwrap_payload(payload)

    if source_format.is_fit:
        result = decode_fit(data)
        track_points = extract_track_points(result.records)
        return CanonicalActivity(
            source_format=source_format,
            metadata=extract_metadata(result, file_name),
            summary=compute_summary(track_points, result.session),
            track_points=track_points,
            laps=extract_laps(result.laps),
            encoded_polyline=encode_polyline(track_points),
            raw_data={
                "sessions": len(result.sessions),
                "records": len(result.records),
                "laps": len(result.laps),
            },
        )

    result = decode_gpx(data, file_name)
    track_points = result.track_points
    return CanonicalActivity(
        source_format=source_format,
        metadata=result.metadata,
        summary=compute_summary(track_points),
        track_points=track_points,
        encoded_polyline=encode_polyline(track_points),
        raw_data={
            "track_point_count": len(track_points),
            "has_elevation": any(p.elevation is not None for p in track_points),
            "has_heart_rate": any(p.heart_rate is not None for p in track_points),
            "has_power": any(p.power is not None for p in track_points),
            "has_cadence": any(p.cadence is not None for p in track_points),
        },
    )


__all__ = [
    "decode_activity",
    "decode_fit",
    "decode_gpx",
    "detect_format",
    "infer_sport",
    "unwrap_payload",
]
