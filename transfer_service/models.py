"""
Module containing data models for the transfer service.
"""
import enum
from dataclasses import dataclass, field
from typing import Iterator, List, Optional


class SessionState(enum.Enum):
    """States of the transfer session state machine."""
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DISCONNECTING = "disconnecting"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


@dataclass
class FileEntry:
    """Represents one input file and its transfer progress.

    The path and size are fixed at discovery time. The offset only moves
    forward and never passes the size; ``offset == size`` means the file
    has been fully sent (or skipped).
    """
    path: str
    size: int
    offset: int = 0
    bytes_sent: int = 0
    records_sent: int = 0
    skipped: bool = False

    def __post_init__(self):
        """Validate the entry."""
        if self.size < 0:
            raise ValueError(f"File size cannot be negative: {self.size}")
        if not 0 <= self.offset <= self.size:
            raise ValueError(
                f"Offset {self.offset} outside of file {self.path} (size {self.size})"
            )

    @property
    def is_complete(self) -> bool:
        return self.offset >= self.size

    @property
    def remaining(self) -> int:
        return self.size - self.offset

    def advance(self, length: int) -> None:
        """Move the offset past a consumed record.

        Args:
            length: Record length in bytes

        Raises:
            ValueError: If the length is negative or passes the file size
        """
        if length < 0:
            raise ValueError(f"Cannot advance by a negative length: {length}")
        if self.offset + length > self.size:
            raise ValueError(
                f"Advancing {self.path} by {length} from {self.offset} "
                f"passes its size {self.size}"
            )
        self.offset += length

    def mark_skipped(self) -> None:
        """Permanently skip the file by marking it fully consumed."""
        self.skipped = True
        self.offset = self.size


class FileInventory:
    """Ordered collection of input files, in discovery order."""

    def __init__(self, entries: Optional[List[FileEntry]] = None):
        self._entries: List[FileEntry] = list(entries or [])

    def add(self, path: str, size: int) -> FileEntry:
        entry = FileEntry(path=path, size=size)
        self._entries.append(entry)
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self._entries)

    def __getitem__(self, index: int) -> FileEntry:
        return self._entries[index]

    def find_unstarted(self, path: str) -> Optional[FileEntry]:
        """Find the first entry for a path that has not been read from yet.

        Args:
            path: Exact path to look for

        Returns:
            The matching FileEntry, or None if no unstarted entry has the path
        """
        for entry in self._entries:
            if entry.offset == 0 and entry.path == path:
                return entry
        return None

    def has_path(self, path: str) -> bool:
        return any(entry.path == path for entry in self._entries)

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for entry in self._entries)

    @property
    def all_sent(self) -> bool:
        return all(entry.is_complete for entry in self._entries)

    def format_table(self) -> str:
        """Render the inventory as a tab separated table with a header line."""
        lines = ["Filename\tOffset\tSize\tBytes\tRecords"]
        for entry in self._entries:
            lines.append(
                f"{entry.path}\t{entry.offset}\t{entry.size}\t"
                f"{entry.bytes_sent}\t{entry.records_sent}"
            )
        return "\n".join(lines)


@dataclass(frozen=True)
class Record:
    """A single framed record read from an input file.

    Times are integer microseconds since the Unix epoch.
    """
    data: bytes
    offset: int
    stream_id: str
    start_time: int
    end_time: int
    network: str = ""
    station: str = ""
    location: str = ""
    channel: str = ""
    sample_rate: float = 0.0
    sample_count: int = 0

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass
class TransferSummary:
    """Represents a summary of a transfer session."""
    total_bytes: int
    total_records: int
    total_files: int
    inventory_files: int
    elapsed: float
    all_sent: bool
    exit_code: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def bytes_per_second(self) -> float:
        return self.total_bytes / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def records_per_second(self) -> float:
        return self.total_records / self.elapsed if self.elapsed > 0 else 0.0
