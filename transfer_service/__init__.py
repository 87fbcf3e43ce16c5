__version__ = "0.1.0"

from .models import FileEntry, FileInventory, Record, SessionState, TransferSummary
from .scanner import FileScanner
from .session import SessionConfig, TransferSession
from .sorted_dir import SortedDirectoryEnumerator
from .tracker import StateTracker

__all__ = [
    "FileEntry",
    "FileInventory",
    "Record",
    "SessionState",
    "TransferSummary",
    "FileScanner",
    "SessionConfig",
    "TransferSession",
    "SortedDirectoryEnumerator",
    "StateTracker",
]
