"""
Module for selecting which records are forwarded.

A selection file contains one selection per line::

    # Network Station Location Channel [Quality] [Start] [End]
    IU ANMO 00 BH? * 2010-01-01T00:00:00 2010-02-01T00:00:00
    XX * * *

Codes accept ``*`` and ``?`` wildcards; ``--`` matches an empty location.
Times may be ISO-8601 or SEED style ``YYYY,DDD[,HH:MM:SS[.ffffff]]``.
"""
import fnmatch
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_time(value: str) -> int:
    """Parse a selection time into microseconds since the epoch.

    Raises:
        ValueError: If the value is not a recognized time
    """
    if "," in value:
        parts = value.split(",")
        if len(parts) not in (2, 3):
            raise ValueError(f"Invalid SEED time: {value}")
        moment = datetime(int(parts[0]), 1, 1, tzinfo=timezone.utc) + timedelta(days=int(parts[1]) - 1)
        if len(parts) == 3:
            clock = parts[2].split(":")
            hours = int(clock[0])
            minutes = int(clock[1]) if len(clock) > 1 else 0
            seconds = float(clock[2]) if len(clock) > 2 else 0.0
            moment += timedelta(hours=hours, minutes=minutes, seconds=seconds)
    else:
        moment = datetime.fromisoformat(value)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)

    delta = moment - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def split_stream_id(stream_id: str) -> Tuple[str, str, str, str]:
    """Split ``NET_STA_LOC_CHAN/TYPE`` into its four codes."""
    name = stream_id.split("/", 1)[0]
    parts = name.split("_")
    if len(parts) != 4:
        raise ValueError(f"Stream identifier does not have four codes: {stream_id}")
    return parts[0], parts[1], parts[2], parts[3]


@dataclass(frozen=True)
class Selection:
    """A single selection line."""
    network: str
    station: str
    location: str
    channel: str
    quality: str = "*"
    start: Optional[int] = None
    end: Optional[int] = None

    def matches(self, codes: Tuple[str, str, str, str],
                start_time: int, end_time: int) -> bool:
        patterns = (self.network, self.station, self.location, self.channel)
        for value, pattern in zip(codes, patterns):
            if pattern == "--":
                pattern = ""
            if not fnmatch.fnmatchcase(value, pattern):
                return False
        if self.start is not None and end_time < self.start:
            return False
        if self.end is not None and start_time > self.end:
            return False
        return True


class SelectionFilter:
    """Matches records against a list of selections."""

    def __init__(self, selections: List[Selection]):
        self.selections = list(selections)

    @classmethod
    def from_file(cls, path: Path) -> "SelectionFilter":
        """Load selections from a file.

        Args:
            path: Selection file path

        Returns:
            SelectionFilter containing the parsed selections

        Raises:
            ConfigurationError: If the file cannot be read, a line is
                invalid or no selections are defined
        """
        try:
            with open(path) as f:
                lines = f.read().splitlines()
        except OSError as e:
            raise ConfigurationError(f"Cannot read selection file {path}: {e}") from e

        selections = []
        for number, line in enumerate(lines, start=1):
            fields = line.split("#", 1)[0].split()
            if not fields:
                continue
            selections.append(cls._parse_line(fields, path, number))

        if not selections:
            raise ConfigurationError(f"No selections found in {path}")

        logger.info(f"Loaded {len(selections)} selections from {path}")
        return cls(selections)

    @staticmethod
    def _parse_line(fields: List[str], path: Path, number: int) -> Selection:
        if len(fields) < 4 or len(fields) > 7:
            raise ConfigurationError(
                f"{path} line {number}: expected 4 to 7 fields, found {len(fields)}")

        quality = "*"
        times = fields[4:]
        # A single character fifth field is a quality code rather than a time
        if times and len(times[0]) == 1:
            quality = times.pop(0)

        try:
            start = parse_time(times[0]) if len(times) > 0 and times[0] != "*" else None
            end = parse_time(times[1]) if len(times) > 1 and times[1] != "*" else None
        except ValueError as e:
            raise ConfigurationError(f"{path} line {number}: {e}") from e

        if len(times) > 2:
            raise ConfigurationError(f"{path} line {number}: too many time fields")

        return Selection(*fields[:4], quality=quality, start=start, end=end)

    def matches(self, stream_id: str, start_time: int, end_time: int) -> bool:
        """Check whether a record is selected.

        Args:
            stream_id: Stream identifier of the record
            start_time: Record start in microseconds since the epoch
            end_time: Record end in microseconds since the epoch

        Returns:
            True if any selection matches
        """
        try:
            codes = split_stream_id(stream_id)
        except ValueError:
            logger.debug(f"Cannot match unrecognized stream id {stream_id}")
            return False
        return any(s.matches(codes, start_time, end_time) for s in self.selections)
