import os
from datetime import datetime, timedelta, timezone
import struct
from typing import Optional
import pytest
from unittest.mock import patch

from activity_ingestion.config import get_settings

FIT_EPOCH_OFFSET = 631065600

CRC_TABLE = (
    0x0000, 0xCC01, 0xD801, 0x1400, 0xF001, 0x3C00, 0x2800, 0xE401,
    0xA001, 0x6C00, 0x7800, 0xB401, 0x5000, 0x9C01, 0x8801, 0x4400,
)

# FIT base type number -> struct format
BASE_TYPES = {
    0x00: "B",  # enum
    0x02: "B",  # uint8
    0x83: "h",  # sint16
    0x84: "H",  # uint16
    0x85: "i",  # sint32
    0x86: "I",  # uint32
    0x8C: "I",  # uint32z
}

SPORTS = {"running": 1, "cycling": 2}

START = datetime(2024, 6, 3, 8, 0, 0, tzinfo=timezone.utc)


def fit_crc(data: bytes, crc: int = 0) -> int:
    for byte in data:
        tmp = CRC_TABLE[crc & 0xF]
        crc = (crc >> 4) & 0x0FFF
        crc = crc ^ tmp ^ CRC_TABLE[byte & 0xF]
        tmp = CRC_TABLE[crc & 0xF]
        crc = (crc >> 4) & 0x0FFF
        crc = crc ^ tmp ^ CRC_TABLE[(byte >> 4) & 0xF]
    return crc


def fit_timestamp(moment: datetime) -> int:
    return int(moment.timestamp()) - FIT_EPOCH_OFFSET


def semicircles(degrees: float) -> int:
    return int(round(degrees * 2 ** 31 / 180))


class FitWriter:
    """Minimal FIT encoder producing files fitparse accepts."""

    def __init__(self) -> None:
        self._data = bytearray()
        self._definitions: dict = {}

    def message(self, global_num: int, fields: list) -> "FitWriter":
        """Append a data message; ``fields`` is a list of (field number, base type, raw value)."""
        fields = [(num, base, value) for num, base, value in fields if value is not None]
        key = (global_num, tuple((num, base) for num, base, _ in fields))
        if key not in self._definitions:
            local = len(self._definitions) % 16
            self._definitions[key] = local
            self._data += struct.pack("<BBBHB", 0x40 | local, 0, 0, global_num, len(fields))
            for num, base, _ in fields:
                self._data += struct.pack("<BBB", num, struct.calcsize("<" + BASE_TYPES[base]), base)
        self._data.append(self._definitions[key])
        for _, base, value in fields:
            self._data += struct.pack("<" + BASE_TYPES[base], value)
        return self

    def file_id(self, manufacturer: int = 1, product: int = 3121, serial_number: int = 3912345678,
                time_created: Optional[datetime] = None) -> "FitWriter":
        return self.message(0, [
            (0, 0x00, 4),  # activity file
            (1, 0x84, manufacturer),
            (2, 0x84, product),
            (3, 0x8C, serial_number),
            (4, 0x86, fit_timestamp(time_created) if time_created else None),
        ])

    def record(self, timestamp: datetime, latitude: Optional[float] = None, longitude: Optional[float] = None,
               altitude: Optional[float] = None, heart_rate: Optional[int] = None,
               cadence: Optional[int] = None, distance: Optional[float] = None,
               speed: Optional[float] = None, power: Optional[int] = None) -> "FitWriter":
        return self.message(20, [
            (253, 0x86, fit_timestamp(timestamp)),
            (0, 0x85, semicircles(latitude) if latitude is not None else None),
            (1, 0x85, semicircles(longitude) if longitude is not None else None),
            (2, 0x84, int(round((altitude + 500) * 5)) if altitude is not None else None),
            (3, 0x02, heart_rate),
            (4, 0x02, cadence),
            (5, 0x86, int(round(distance * 100)) if distance is not None else None),
            (6, 0x84, int(round(speed * 1000)) if speed is not None else None),
            (7, 0x84, power),
        ])

    def session(self, start_time: datetime, sport: str = "cycling", total_elapsed_time: float = 0,
                total_timer_time: float = 0, total_distance: float = 0,
                avg_speed: Optional[float] = None, max_speed: Optional[float] = None,
                avg_heart_rate: Optional[int] = None, max_heart_rate: Optional[int] = None,
                avg_power: Optional[int] = None, max_power: Optional[int] = None,
                total_ascent: Optional[int] = None, total_descent: Optional[int] = None,
                total_calories: Optional[int] = None, normalized_power: Optional[int] = None) -> "FitWriter":
        return self.message(18, [
            (253, 0x86, fit_timestamp(start_time + timedelta(seconds=total_elapsed_time))),
            (2, 0x86, fit_timestamp(start_time)),
            (5, 0x00, SPORTS[sport]),
            (7, 0x86, int(round(total_elapsed_time * 1000))),
            (8, 0x86, int(round(total_timer_time * 1000))),
            (9, 0x86, int(round(total_distance * 100))),
            (11, 0x84, total_calories),
            (14, 0x84, int(round(avg_speed * 1000)) if avg_speed is not None else None),
            (15, 0x84, int(round(max_speed * 1000)) if max_speed is not None else None),
            (16, 0x02, avg_heart_rate),
            (17, 0x02, max_heart_rate),
            (20, 0x84, avg_power),
            (21, 0x84, max_power),
            (22, 0x84, total_ascent),
            (23, 0x84, total_descent),
            (34, 0x84, normalized_power),
        ])

    def lap(self, start_time: datetime, total_elapsed_time: float, total_distance: float,
            avg_speed: Optional[float] = None, avg_heart_rate: Optional[int] = None) -> "FitWriter":
        return self.message(19, [
            (2, 0x86, fit_timestamp(start_time)),
            (7, 0x86, int(round(total_elapsed_time * 1000))),
            (8, 0x86, int(round(total_elapsed_time * 1000))),
            (9, 0x86, int(round(total_distance * 100))),
            (13, 0x84, int(round(avg_speed * 1000)) if avg_speed is not None else None),
            (15, 0x02, avg_heart_rate),
        ])

    def to_bytes(self) -> bytes:
        header = struct.pack("<BBHI4s", 14, 0x20, 2132, len(self._data), b".FIT")
        header += struct.pack("<H", fit_crc(header))
        content = header + bytes(self._data)
        return content + struct.pack("<H", fit_crc(content))


def build_fit_activity(start: datetime = START, points: int = 120, step_deg: float = 0.0001,
                       interval: int = 1, with_session: bool = True, with_positions: bool = True,
                       heart_rate: Optional[int] = 140) -> bytes:
    """A northbound ride: ``points`` records, ``step_deg`` of latitude apart."""
    writer = FitWriter().file_id(time_created=start)
    for i in range(points):
        writer.record(
            start + timedelta(seconds=i * interval),
            latitude=47.0 + i * step_deg if with_positions else None,
            longitude=8.0 if with_positions else None,
            altitude=400.0 + i * 0.5,
            heart_rate=heart_rate,
            power=200,
            cadence=85,
        )
    if with_session:
        writer.session(
            start,
            sport="cycling",
            total_elapsed_time=points * interval,
            total_timer_time=points * interval,
            total_distance=1300.0,
            avg_speed=10.5,
            max_speed=12.25,
            avg_heart_rate=141,
            max_heart_rate=172,
            avg_power=205,
            max_power=480,
            total_ascent=58,
            total_descent=3,
            total_calories=321,
            normalized_power=214,
        )
    return writer.to_bytes()


def build_gpx(name: str = "Morning Ride", start: datetime = START, points: int = 60,
              step_deg: float = 0.0001, interval: int = 1, description: str = "",
              with_extensions: bool = True) -> str:
    """A GPX 1.1 track with Garmin TrackPointExtension v1 heart rate and cadence."""
    trkpts = []
    for i in range(points):
        timestamp = (start + timedelta(seconds=i * interval)).strftime("%Y-%m-%dT%H:%M:%SZ")
        extensions = ""
        if with_extensions:
            extensions = (
                "<extensions><gpxtpx:TrackPointExtension>"
                f"<gpxtpx:hr>{130 + i % 10}</gpxtpx:hr><gpxtpx:cad>90</gpxtpx:cad>"
                "</gpxtpx:TrackPointExtension></extensions>"
            )
        trkpts.append(
            f'<trkpt lat="{47.0 + i * step_deg:.6f}" lon="8.000000">'
            f"<ele>{400 + i * 0.5:.1f}</ele><time>{timestamp}</time>{extensions}</trkpt>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<gpx version="1.1" creator="StravaGPX" xmlns="http://www.topografix.com/GPX/1/1" '
        'xmlns:gpxtpx="http://www.garmin.com/xmlschemas/TrackPointExtension/v1">'
        f"<metadata><time>{start.strftime('%Y-%m-%dT%H:%M:%SZ')}</time></metadata>"
        f"<trk><name>{name}</name><desc>{description}</desc><trkseg>{''.join(trkpts)}</trkseg></trk>"
        "</gpx>"
    )


@pytest.fixture(autouse=True)
def test_env():
    """Ensure we're using test settings."""
    get_settings.cache_clear()
    with patch.dict(os.environ, {"ENV_NAME": "test"}):
        yield
    get_settings.cache_clear()


@pytest.fixture
def fit_writer():
    return FitWriter()


@pytest.fixture
def fit_activity():
    return build_fit_activity()


@pytest.fixture
def gpx_activity():
    return build_gpx()
