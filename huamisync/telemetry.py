from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Sequence

from .const import (
    COORDINATE_SCALE,
    DURATION_PLACEHOLDER,
    EARTH_RADIUS_KM,
    FIXED_RECORD_MAX_TYPE,
    FIXED_RECORD_SIZE,
    HEART_RATE_ATTACH_SECONDS,
    HEART_RATE_NO_READING,
    TIMESTAMP_MAX_YEAR,
    TIMESTAMP_MIN_YEAR,
    TLV_MIN_CONSUMED_RATIO,
)

_LOGGER = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Huami sports-detail stream: [type:1][length:1][payload:length-2], little endian.
# length counts the two header bytes.


class RecordType(IntEnum):
    TIMESTAMP = 0x01
    ABSOLUTE_FIX = 0x02
    DELTA_FIX = 0x03
    HEART_RATE = 0x04
    STATUS = 0x05
    SPEED = 0x06
    ALTITUDE = 0x07
    PAUSE = 0x08


RECORD_SIZES = {
    RecordType.TIMESTAMP: 12,
    RecordType.ABSOLUTE_FIX: 20,
    RecordType.DELTA_FIX: 8,
    RecordType.HEART_RATE: 3,
    RecordType.STATUS: 4,
    RecordType.SPEED: 6,
    RecordType.ALTITUDE: 6,
    RecordType.PAUSE: 4,
}

# Legacy fixed-size layout
FIXED_TYPE_GPS = 0
FIXED_TYPE_HEART_RATE = 1


class TelemetryLayout(Enum):
    EMPTY = "empty"
    TLV = "tlv"
    FIXED_RECORD = "fixed_record"
    ESTIMATE = "estimate"


def i16_le(b: bytes, off: int) -> int:
    return int.from_bytes(b[off : off + 2], "little", signed=True)


def i32_le(b: bytes, off: int) -> int:
    return int.from_bytes(b[off : off + 4], "little", signed=True)


def u64_le(b: bytes, off: int) -> int:
    return int.from_bytes(b[off : off + 8], "little", signed=False)


def to_degrees(value: int) -> float:
    return value / COORDINATE_SCALE


def valid_heart_rate(bpm: int | None) -> bool:
    return bpm is not None and bpm not in HEART_RATE_NO_READING


@dataclass
class TrackPoint:
    timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    heart_rate: int | None = None

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def has_valid_position(self) -> bool:
        return (
            self.has_position
            and -90.0 <= self.latitude <= 90.0
            and -180.0 <= self.longitude <= 180.0
        )


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def total_distance_km(points: Sequence[TrackPoint]) -> float:
    fixes = [p for p in points if p.has_position]
    return sum(
        haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
        for a, b in zip(fixes, fixes[1:])
    )


def format_duration(seconds: float | None) -> str:
    if seconds is None or seconds <= 0:
        return DURATION_PLACEHOLDER
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


@dataclass
class DecodeResult:
    points: list[TrackPoint] = field(default_factory=list)
    is_real_data: bool = False
    byte_count: int = 0
    layout: TelemetryLayout = TelemetryLayout.EMPTY
    heart_rates: list[int] = field(default_factory=list)
    records: int = 0
    skipped_records: int = 0
    consumed_bytes: int = 0
    truncated: bool = False

    @property
    def position_points(self) -> list[TrackPoint]:
        return [p for p in self.points if p.has_position]

    @property
    def distance_km(self) -> float:
        return total_distance_km(self.points)

    @property
    def duration_seconds(self) -> float | None:
        fixes = self.position_points
        if not fixes:
            return None
        return (fixes[-1].timestamp - fixes[0].timestamp).total_seconds()

    @property
    def duration(self) -> str:
        return format_duration(self.duration_seconds)


class _TrackBuilder:
    """Running clock and position shared by both record layouts."""

    def __init__(self, origin: datetime) -> None:
        self.origin = origin
        self.offset = 0
        self.lon = 0
        self.lat = 0
        self.points: list[TrackPoint] = []
        self.heart_rates: list[int] = []

    def now(self, extra: int = 0) -> datetime:
        return self.origin + timedelta(seconds=self.offset + extra)

    def fix(self) -> None:
        self.points.append(
            TrackPoint(self.now(), to_degrees(self.lat), to_degrees(self.lon))
        )

    def heart_rate(self, bpm: int, when: datetime) -> None:
        if not valid_heart_rate(bpm):
            return
        self.heart_rates.append(bpm)
        window = timedelta(seconds=HEART_RATE_ATTACH_SECONDS)
        if self.points and abs(when - self.points[-1].timestamp) <= window:
            self.points[-1].heart_rate = bpm
        else:
            self.points.append(TrackPoint(when, heart_rate=bpm))


def _timestamp_origin(rec: bytes) -> datetime | None:
    try:
        origin = EPOCH + timedelta(milliseconds=u64_le(rec, 2))
    except OverflowError:
        return None
    if not TIMESTAMP_MIN_YEAR <= origin.year <= TIMESTAMP_MAX_YEAR:
        return None
    return origin


def _apply_record(track: _TrackBuilder, rtype: RecordType, rec: bytes) -> None:
    if rtype is RecordType.ABSOLUTE_FIX:
        track.offset += i16_le(rec, 2)
        track.lon = i32_le(rec, 4)
        track.lat = i32_le(rec, 8)
        track.fix()
    elif rtype is RecordType.DELTA_FIX:
        track.offset += i16_le(rec, 2)
        track.lon += i16_le(rec, 4)
        track.lat += i16_le(rec, 6)
        track.fix()
    elif rtype is RecordType.HEART_RATE:
        if len(rec) >= 5:
            track.heart_rate(rec[4], track.now(i16_le(rec, 2)))
        else:
            track.heart_rate(rec[2], track.now())


def _decode_tlv(data: bytes, origin: datetime) -> tuple[_TrackBuilder, DecodeResult]:
    track = _TrackBuilder(origin)
    result = DecodeResult(byte_count=len(data), layout=TelemetryLayout.TLV)
    malformed = False

    n = len(data)
    off = 0
    while off + 2 <= n:
        tag = data[off]
        length = data[off + 1]
        if length < 2:
            _LOGGER.debug("Malformed record header at %d: %s", off, data[off : off + 2].hex())
            malformed = True
            break
        if off + length > n:
            _LOGGER.debug(
                "Record 0x%02x at %d wants %d bytes, %d left; dropping",
                tag,
                off,
                length,
                n - off,
            )
            result.truncated = True
            break

        rec = data[off : off + length]
        off += length

        try:
            rtype = RecordType(tag)
        except ValueError:
            result.skipped_records += 1
            continue
        if length < RECORD_SIZES[rtype]:
            result.skipped_records += 1
            continue

        if rtype is RecordType.TIMESTAMP:
            origin = _timestamp_origin(rec)
            if origin is None:
                _LOGGER.debug("Ignoring out-of-range timestamp: %s", rec.hex())
                result.skipped_records += 1
                continue
            track.origin = origin
            track.offset = 0
        else:
            saved = (track.offset, track.lon, track.lat)
            try:
                _apply_record(track, rtype, rec)
            except OverflowError:
                _LOGGER.debug("Record 0x%02x runs past the calendar; skipped", tag)
                track.offset, track.lon, track.lat = saved
                result.skipped_records += 1
                continue

        result.records += 1
        result.consumed_bytes += length

    if off < n and not result.truncated and not malformed:
        result.truncated = True

    return track, result


def _looks_like_fixed_records(data: bytes) -> bool:
    if not data or len(data) % FIXED_RECORD_SIZE:
        return False
    types = data[::FIXED_RECORD_SIZE]
    if any(t >= FIXED_RECORD_MAX_TYPE for t in types):
        return False
    return FIXED_TYPE_GPS in types or FIXED_TYPE_HEART_RATE in types


def _decode_fixed(data: bytes, origin: datetime) -> DecodeResult:
    """8-byte records: type, wrapping 8-bit time offset, 6 payload bytes."""
    track = _TrackBuilder(origin)
    last_tick = 0
    records = 0

    skipped = 0

    for off in range(0, len(data), FIXED_RECORD_SIZE):
        rec = data[off : off + FIXED_RECORD_SIZE]
        tick = rec[1]
        track.offset += (tick - last_tick) % 256
        last_tick = tick

        try:
            if rec[0] == FIXED_TYPE_GPS:
                track.lon += i16_le(rec, 2)
                track.lat += i16_le(rec, 4)
                track.fix()
            elif rec[0] == FIXED_TYPE_HEART_RATE:
                values = rec[2:8]
                if not any(values[1:]):
                    track.heart_rate(values[0], track.now())
                else:
                    for rel, bpm in zip(values[::2], values[1::2]):
                        track.heart_rate(bpm, track.now(rel))
        except OverflowError:
            _LOGGER.debug("Fixed record at %d runs past the calendar; skipped", off)
            skipped += 1
            continue
        records += 1

    return DecodeResult(
        points=track.points,
        is_real_data=False,
        byte_count=len(data),
        layout=TelemetryLayout.FIXED_RECORD,
        heart_rates=track.heart_rates,
        records=records,
        skipped_records=skipped,
    )


def decode(buffer: bytes, origin: datetime | None = None) -> DecodeResult:
    """Decode a reassembled sports-detail buffer.

    The TLV layout is tried first. Firmwares that emit something else fall
    back to the legacy fixed-record layout, and failing that to a byte-count
    estimate. Only a TLV decode sets is_real_data; callers must check it
    before trusting positions. A TLV walk only counts when more than half
    of the buffer sits in accepted records.
    """
    data = bytes(buffer)
    if not data:
        return DecodeResult()

    origin = origin or EPOCH
    track, result = _decode_tlv(data, origin)
    if result.records and result.consumed_bytes > len(data) * TLV_MIN_CONSUMED_RATIO:
        result.points = track.points
        result.heart_rates = track.heart_rates
        result.is_real_data = True
        _LOGGER.debug(
            "Decoded %d records (%d skipped) into %d points",
            result.records,
            result.skipped_records,
            len(result.points),
        )
        return result
    if result.records:
        _LOGGER.debug(
            "TLV walk covered only %d of %d bytes; not trusted",
            result.consumed_bytes,
            len(data),
        )

    if _looks_like_fixed_records(data):
        _LOGGER.info("Buffer is not TLV; decoding as fixed 8-byte records")
        return _decode_fixed(data, origin)

    _LOGGER.warning(
        "Unrecognised telemetry layout (%d bytes); returning estimate only", len(data)
    )
    return DecodeResult(byte_count=len(data), layout=TelemetryLayout.ESTIMATE)
