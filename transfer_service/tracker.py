"""
Module for persisting and restoring per-file transfer progress.

The state file holds one line per input file::

    path<TAB>offset<TAB>size<TAB>bytes_sent<TAB>records_sent

Every save rewrites the whole inventory to a temporary file next to the
target and renames it into place, so a reader never observes a partially
written state file.
"""
import logging
import os
import tempfile
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import StateError
from .models import FileInventory

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "\t"


@dataclass
class PersistedEntry:
    """One line of the state file."""
    path: str
    offset: int
    size: int
    bytes_sent: int
    records_sent: int

    def to_line(self) -> str:
        return FIELD_SEPARATOR.join(
            [self.path, str(self.offset), str(self.size),
             str(self.bytes_sent), str(self.records_sent)]
        ) + "\n"

    @classmethod
    def from_line(cls, line: str, line_number: int) -> "PersistedEntry":
        fields = line.split(FIELD_SEPARATOR)
        if len(fields) != 5:
            raise StateError(
                f"Could not parse line {line_number} of state file: "
                f"expected 5 fields, found {len(fields)}"
            )
        try:
            offset, size, bytes_sent, records_sent = (int(v) for v in fields[1:])
        except ValueError as e:
            raise StateError(f"Could not parse line {line_number} of state file: {e}") from e
        if min(offset, size, bytes_sent, records_sent) < 0:
            raise StateError(f"Negative value on line {line_number} of state file")
        return cls(fields[0], offset, size, bytes_sent, records_sent)


class StateTracker:
    """Saves and restores transfer progress for a file inventory."""

    def __init__(self, state_file: Optional[Path] = None):
        """Initialize the state tracker.

        Args:
            state_file: Path to the state file. If None, nothing is persisted.
        """
        self.state_file = Path(state_file) if state_file else None

    def save(self, inventory: FileInventory) -> None:
        """Write a snapshot of the whole inventory to the state file.

        Args:
            inventory: Inventory to persist

        Raises:
            StateError: If the snapshot cannot be written; the previously
                committed state file is left untouched
        """
        if not self.state_file:
            return

        lines = []
        for entry in inventory:
            if FIELD_SEPARATOR in entry.path or "\n" in entry.path:
                raise StateError(f"Cannot persist path containing tab or newline: {entry.path!r}")
            lines.append(PersistedEntry(
                entry.path, entry.offset, entry.size,
                entry.bytes_sent, entry.records_sent
            ).to_line())

        directory = self.state_file.parent
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", dir=directory, prefix=f".{self.state_file.name}.",
                suffix=".tmp", delete=False
            ) as tmp:
                tmp_path = tmp.name
                tmp.writelines(lines)
                tmp.flush()
                os.fsync(tmp.fileno())

            os.replace(tmp_path, self.state_file)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StateError(f"Error saving state file {self.state_file}: {e}") from e

        logger.debug(f"Saved {len(lines)} file states to {self.state_file}")

    def load(self) -> List[PersistedEntry]:
        """Read the persisted entries.

        Returns:
            Persisted entries in file order; empty if the state file does
            not exist

        Raises:
            StateError: If the file cannot be read or a line is malformed
        """
        if not self.state_file or not self.state_file.exists():
            return []

        try:
            with open(self.state_file) as f:
                text = f.read()
        except OSError as e:
            raise StateError(f"Error opening state file {self.state_file}: {e}") from e

        entries = []
        for number, line in enumerate(text.split("\n"), start=1):
            if not line.strip():
                continue
            entries.append(PersistedEntry.from_line(line, number))
        return entries

    def restore(self, inventory: FileInventory) -> int:
        """Copy persisted progress onto matching inventory entries.

        Each persisted line is matched to the first entry with the same path
        that has not been read from yet, so restoring twice is harmless.

        Args:
            inventory: Freshly built inventory

        Returns:
            Number of entries that were matched

        Raises:
            StateError: If a persisted path is not part of the inventory
        """
        persisted = self.load()
        if not persisted:
            return 0

        logger.info(f"Recovering state from {self.state_file}")
        matched = 0
        available = Counter(entry.path for entry in inventory)
        lines_seen = Counter()

        for record in persisted:
            lines_seen[record.path] += 1
            entry = inventory.find_unstarted(record.path)
            if entry is None:
                if inventory.has_path(record.path):
                    # Already restored from an earlier line or an earlier call,
                    # unless there are more lines than entries for the path
                    if lines_seen[record.path] > available[record.path]:
                        logger.warning(
                            f"{record.path}: discarding surplus saved state "
                            f"(offset {record.offset}), the file is listed "
                            f"{available[record.path]} time(s) in the inputs"
                        )
                    continue
                raise StateError(
                    f"State file {self.state_file} references {record.path}, "
                    f"which is not among the input files"
                )

            if entry.size != record.size:
                logger.warning(
                    f"{entry.path}: size has changed since last execution "
                    f"({record.size} => {entry.size})"
                )

            offset = record.offset
            if offset > entry.size:
                logger.warning(
                    f"{entry.path}: saved offset {offset} is beyond the current "
                    f"size {entry.size}, treating the file as sent"
                )
                offset = entry.size

            entry.offset = offset
            entry.bytes_sent = record.bytes_sent
            entry.records_sent = record.records_sent
            matched += 1

        logger.info(f"Recovered state for {matched} of {len(inventory)} files")
        return matched
