"""
Module for reading Mini-SEED 2.x records from input files.

Only the parts of the format needed to forward records are decoded: the
fixed section of data header, blockette 1000 (record length) and blockette
100 (actual sample rate). Sample payloads are passed through untouched.
"""
import logging
import os
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Dict, Optional, Tuple

from .errors import CorruptRecordError, NotRecognizedError
from .models import Record

logger = logging.getLogger(__name__)

FIXED_HEADER_LENGTH = 48
# seq, quality, reserved, station, location, channel, network,
# BTIME(year, day, hour, min, sec, unused, fract), nsamples, rate factor,
# rate multiplier, activity, io, data quality, blockette count, time
# correction, data offset, first blockette offset
FIXED_HEADER_FORMAT = "6scc5s2s3s2sHHBBBBHHhhBBBBiHH"
BLOCKETTE_HEADER_FORMAT = "HH"
BLOCKETTE_1000_FORMAT = "BBBB"
BLOCKETTE_100_FORMAT = "f"

QUALITY_CODES = b"DRQM"
MIN_RECORD_EXPONENT = 7
MAX_RECORD_EXPONENT = 17
HEADER_PROBE_LENGTH = 1024

# Activity flag bit: time correction already applied to the start time
TIME_CORRECTION_APPLIED = 0x02

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class FixedHeader:
    """Decoded fields of the 48 byte fixed section of data header."""
    byte_order: str
    quality: str
    network: str
    station: str
    location: str
    channel: str
    start_time: int
    sample_count: int
    sample_rate: float
    activity_flags: int
    time_correction: int
    blockette_offset: int

    @property
    def stream_id(self) -> str:
        return f"{self.network}_{self.station}_{self.location}_{self.channel}/MSEED"


def nominal_sample_rate(factor: int, multiplier: int) -> float:
    """Compute the sample rate from the SEED factor and multiplier."""
    if factor == 0 or multiplier == 0:
        return 0.0
    if factor > 0 and multiplier > 0:
        return float(factor * multiplier)
    if factor > 0 > multiplier:
        return -float(factor) / multiplier
    if factor < 0 < multiplier:
        return -float(multiplier) / factor
    return 1.0 / (factor * multiplier)


def btime_to_epoch_us(year: int, day: int, hour: int, minute: int,
                      second: int, fract: int) -> int:
    """Convert SEED BTIME fields to microseconds since the epoch.

    ``fract`` is in units of 0.0001 seconds.
    """
    moment = datetime(year, 1, 1, tzinfo=timezone.utc) + timedelta(
        days=day - 1, hours=hour, minutes=minute, seconds=second,
        microseconds=fract * 100
    )
    delta = moment - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def _detect_byte_order(raw: bytes) -> Optional[str]:
    for order in (">", "<"):
        year, day = struct.unpack_from(order + "HH", raw, 20)
        if 1900 <= year <= 2100 and 1 <= day <= 366:
            return order
    return None


def looks_like_header(raw: bytes) -> bool:
    """Check whether a buffer starts with a plausible fixed header."""
    if len(raw) < FIXED_HEADER_LENGTH:
        return False
    if any(c not in b"0123456789 \x00" for c in raw[0:6]):
        return False
    if raw[6] not in QUALITY_CODES or raw[7] not in b" \x00":
        return False
    order = _detect_byte_order(raw)
    if order is None:
        return False
    hour, minute, second = raw[24], raw[25], raw[26]
    return hour <= 23 and minute <= 59 and second <= 60


def parse_fixed_header(raw: bytes) -> FixedHeader:
    """Decode the fixed section of data header.

    Raises:
        ValueError: If the buffer is not a fixed header
    """
    if not looks_like_header(raw):
        raise ValueError("not a Mini-SEED fixed header")

    order = _detect_byte_order(raw)
    (_seq, quality, _reserved, station, location, channel, network,
     year, day, hour, minute, second, _unused, fract,
     nsamples, factor, multiplier, activity, _io, _dq, _nblockettes,
     correction, _data_offset, blockette_offset) = struct.unpack_from(
        order + FIXED_HEADER_FORMAT, raw, 0)

    def code(value: bytes) -> str:
        return value.decode("ascii", errors="replace").strip(" \x00")

    return FixedHeader(
        byte_order=order,
        quality=quality.decode("ascii"),
        network=code(network),
        station=code(station),
        location=code(location),
        channel=code(channel),
        start_time=btime_to_epoch_us(year, day, hour, minute, second, fract),
        sample_count=nsamples,
        sample_rate=nominal_sample_rate(factor, multiplier),
        activity_flags=activity,
        time_correction=correction,
        blockette_offset=blockette_offset,
    )


def parse_blockettes(raw: bytes, header: FixedHeader) -> Dict[int, Tuple]:
    """Walk the blockette chain present in ``raw``.

    Returns:
        Mapping of blockette type to its decoded fields, for blockettes 100
        and 1000
    """
    found: Dict[int, Tuple] = {}
    offset = header.blockette_offset
    seen = set()

    while offset and offset not in seen and offset + 4 <= len(raw):
        seen.add(offset)
        kind, next_offset = struct.unpack_from(
            header.byte_order + BLOCKETTE_HEADER_FORMAT, raw, offset)
        body = offset + 4
        if kind == 1000 and body + 4 <= len(raw):
            found[1000] = struct.unpack_from(
                header.byte_order + BLOCKETTE_1000_FORMAT, raw, body)
        elif kind == 100 and body + 4 <= len(raw):
            found[100] = struct.unpack_from(
                header.byte_order + BLOCKETTE_100_FORMAT, raw, body)
        offset = next_offset

    return found


class MiniSeedReader:
    """Reads Mini-SEED records at byte offsets of a file.

    The file last read from stays open until a different path is read or
    close() is called.
    """

    def __init__(self):
        self._path: Optional[str] = None
        self._file: Optional[BinaryIO] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Close the currently open file, if any."""
        if self._file is not None:
            self._file.close()
        self._file = None
        self._path = None

    def _open(self, path: str) -> BinaryIO:
        if self._file is not None and self._path == path:
            return self._file
        self.close()
        self._file = open(path, "rb")
        self._path = path
        return self._file

    def read_record(self, path: str, offset: int,
                    limit: Optional[int] = None) -> Optional[Record]:
        """Read the record starting at ``offset``.

        Args:
            path: File to read
            offset: Byte offset of a record boundary
            limit: Treat the file as ending at this size

        Returns:
            The Record, or None at end of data

        Raises:
            NotRecognizedError: If the bytes at offset are not a Mini-SEED header
            CorruptRecordError: If the record is truncated or its length
                cannot be determined
        """
        f = self._open(path)
        end = os.fstat(f.fileno()).st_size
        if limit is not None:
            end = min(end, limit)
        if offset >= end:
            return None

        f.seek(offset)
        probe = f.read(min(HEADER_PROBE_LENGTH, end - offset))

        try:
            header = parse_fixed_header(probe)
        except ValueError as e:
            if len(probe) < FIXED_HEADER_LENGTH and offset > 0:
                raise CorruptRecordError(path, offset, "short record header") from e
            raise NotRecognizedError(path, offset, "no Mini-SEED header found") from e

        blockettes = parse_blockettes(probe, header)
        record_length = self._record_length(f, path, offset, end, blockettes)

        if offset + record_length > end:
            raise CorruptRecordError(
                path, offset,
                f"short record: {end - offset} of {record_length} bytes available"
            )

        f.seek(offset)
        data = f.read(record_length)
        if len(data) != record_length:
            raise CorruptRecordError(path, offset, "record truncated while reading")

        sample_rate = header.sample_rate
        if 100 in blockettes and blockettes[100][0] > 0:
            sample_rate = float(blockettes[100][0])

        start = header.start_time
        if header.time_correction and not header.activity_flags & TIME_CORRECTION_APPLIED:
            start += header.time_correction * 100

        end_time = start
        if sample_rate > 0 and header.sample_count > 0:
            end_time = start + int(round((header.sample_count - 1) / sample_rate * 1_000_000))

        return Record(
            data=data,
            offset=offset,
            stream_id=header.stream_id,
            start_time=start,
            end_time=end_time,
            network=header.network,
            station=header.station,
            location=header.location,
            channel=header.channel,
            sample_rate=sample_rate,
            sample_count=header.sample_count,
        )

    def _record_length(self, f, path: str, offset: int, end: int,
                       blockettes: Dict[int, Tuple]) -> int:
        if 1000 in blockettes:
            exponent = blockettes[1000][2]
            if not MIN_RECORD_EXPONENT <= exponent <= MAX_RECORD_EXPONENT:
                raise CorruptRecordError(
                    path, offset, f"invalid record length exponent {exponent}")
            return 2 ** exponent

        # No blockette 1000: the next header or end of data marks the length
        for exponent in range(MIN_RECORD_EXPONENT, MAX_RECORD_EXPONENT + 1):
            candidate = 2 ** exponent
            if offset + candidate == end:
                return candidate
            if offset + candidate > end:
                break
            f.seek(offset + candidate)
            if looks_like_header(f.read(FIXED_HEADER_LENGTH)):
                return candidate

        raise CorruptRecordError(path, offset, "cannot determine record length")
