"""
Module for tracking the time coverage of records sent and writing SYNC files.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .models import Record

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SourceKey = Tuple[str, str, str, str]


@dataclass
class Segment:
    """A contiguous time range of one stream."""
    start: int
    end: int
    sample_rate: float
    sample_count: int


def seed_time(us: int) -> str:
    """Format microseconds since the epoch as ``YYYY,DDD,HH:MM:SS.FFFFFF``."""
    moment = EPOCH + timedelta(microseconds=us)
    return (
        f"{moment.year:04d},{moment.timetuple().tm_yday:03d},"
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}.{moment.microsecond:06d}"
    )


def year_day(moment: datetime) -> str:
    return f"{moment.year:04d},{moment.timetuple().tm_yday:03d}"


class CoverageTracker:
    """Accumulates the time ranges of records successfully sent."""

    def __init__(self):
        self._segments: Dict[SourceKey, List[Segment]] = {}

    def __len__(self) -> int:
        return sum(len(segments) for segments in self._segments.values())

    def add(self, record: Record) -> None:
        """Merge a record's time range into the coverage of its stream.

        Records continue a segment when they start within half a sample
        period of the expected next sample time (or end just before it
        starts).
        """
        key = (record.network, record.station, record.location, record.channel)
        segments = self._segments.setdefault(key, [])

        period = int(1_000_000 / record.sample_rate) if record.sample_rate > 0 else 0
        tolerance = period // 2

        for segment in segments:
            if segment.sample_rate != record.sample_rate:
                continue
            if abs(record.start_time - (segment.end + period)) <= tolerance:
                segment.end = max(segment.end, record.end_time)
                segment.sample_count += record.sample_count
                return
            if abs(segment.start - (record.end_time + period)) <= tolerance:
                segment.start = min(segment.start, record.start_time)
                segment.sample_count += record.sample_count
                return

        segments.append(Segment(
            start=record.start_time,
            end=record.end_time,
            sample_rate=record.sample_rate,
            sample_count=record.sample_count,
        ))

    def segments(self) -> List[Tuple[SourceKey, Segment]]:
        """All segments ordered by source name then start time."""
        items = [
            (key, segment)
            for key, segments in self._segments.items()
            for segment in segments
        ]
        items.sort(key=lambda item: (item[0], item[1].start))
        return items

    def sync_lines(self, now: Optional[datetime] = None) -> List[str]:
        """Render the coverage as SYNC file lines, header first."""
        stamp = year_day(now or datetime.now())
        lines = [f"DCC|{stamp}"]
        for (net, sta, loc, chan), segment in self.segments():
            lines.append(
                f"{net}|{sta}|{loc}|{chan}|{seed_time(segment.start)}|{seed_time(segment.end)}"
                f"||{segment.sample_rate:.2g}|{segment.sample_count}|||||||{stamp}"
            )
        return lines

    def write_sync(self, directory: Path, run_start: datetime,
                   run_end: datetime) -> Optional[Path]:
        """Write a SYNC file named after the run start and end times.

        Args:
            directory: Directory to write the file into
            run_start: Local time the run started
            run_end: Local time the run ended

        Returns:
            Path of the written file, or None if nothing was sent
        """
        if not self._segments:
            return None

        fmt = "%Y-%m-%dT%H:%M:%S"
        path = Path(directory) / f"{run_start.strftime(fmt)}--{run_end.strftime(fmt)}.sync"
        try:
            with open(path, "w") as f:
                f.write("\n".join(self.sync_lines()) + "\n")
        except OSError as e:
            logger.error(f"Error writing SYNC file {path}: {e}")
            return None

        logger.info(f"Wrote SYNC file {path}")
        return path
