"""
Module for building the ordered inventory of input files.
"""
import logging
import os
import stat
from typing import Iterable, List, Optional

from .errors import InventoryError
from .models import FileInventory
from .sorted_dir import SortedDirectoryEnumerator

logger = logging.getLogger(__name__)


def normalize_root(path: str) -> str:
    """Strip trailing path separators, leaving a bare filesystem root alone.

    Args:
        path: Path as given on the command line or in a list file

    Returns:
        Path without trailing separators
    """
    stripped = path.rstrip(os.sep)
    if os.altsep:
        stripped = stripped.rstrip(os.altsep)
    return stripped or path[:1]


def read_list_file(list_file: str) -> List[str]:
    """Read input paths from a list file.

    Blank lines and lines starting with ``#`` are ignored.

    Args:
        list_file: Path to the list file

    Returns:
        Paths in file order

    Raises:
        InventoryError: If the list file cannot be read
    """
    logger.info(f"Reading list file '{list_file}'")
    try:
        with open(list_file) as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise InventoryError(f"Cannot open list file {list_file}: {e}") from e

    paths = []
    for line in lines:
        if not line or line.startswith("#"):
            continue
        logger.debug(f"Adding '{line}' from list file")
        paths.append(line)
    return paths


class FileScanner:
    """Walks input roots and builds the file inventory in discovery order."""

    def __init__(self, recursion_limit: int = -1):
        """Initialize the file scanner.

        Args:
            recursion_limit: Maximum directory depth to descend into below a
                root directory; negative means unlimited
        """
        self.recursion_limit = recursion_limit

    def build_inventory(self, roots: Iterable[str],
                        list_files: Iterable[str] = ()) -> FileInventory:
        """Build the inventory from explicit roots followed by list files.

        Args:
            roots: Files and directories in command line order
            list_files: Files containing further roots, one per line

        Returns:
            FileInventory in discovery order

        Raises:
            InventoryError: If any root or directory cannot be enumerated
        """
        inventory = FileInventory()

        for root in roots:
            self.add_root(inventory, root)

        for list_file in list_files:
            for root in read_list_file(list_file):
                self.add_root(inventory, root)

        logger.info(
            f"Found {len(inventory)} input files totalling {inventory.total_bytes} bytes"
        )
        return inventory

    def add_root(self, inventory: FileInventory, root: str) -> None:
        """Classify a root and add it, expanding directories recursively.

        Args:
            inventory: Inventory to append to
            root: File or directory path

        Raises:
            InventoryError: If the root does not exist or is not a regular
                file or directory
        """
        path = normalize_root(root)
        try:
            st = os.stat(path)
        except OSError as e:
            raise InventoryError(f"Could not find '{path}': {e}") from e

        if stat.S_ISDIR(st.st_mode):
            self._add_directory(inventory, path, depth=0)
        elif stat.S_ISREG(st.st_mode):
            inventory.add(path, st.st_size)
        else:
            raise InventoryError(f"'{path}' is not a regular file or directory")

    def _add_directory(self, inventory: FileInventory, directory: str,
                       depth: int) -> None:
        logger.debug(f"Processing directory '{directory}'")

        for name in SortedDirectoryEnumerator(directory):
            path = os.path.join(directory, name)
            try:
                st = os.stat(path)
            except OSError as e:
                raise InventoryError(f"Cannot stat {path}: {e}") from e

            if stat.S_ISDIR(st.st_mode):
                if self._may_descend(depth):
                    logger.debug(f"Recursing into {path}")
                    self._add_directory(inventory, path, depth + 1)
                continue

            if not stat.S_ISREG(st.st_mode):
                logger.warning(f"{path} is not a regular file, skipping")
                continue

            inventory.add(path, st.st_size)

    def _may_descend(self, depth: int) -> bool:
        return self.recursion_limit < 0 or depth < self.recursion_limit


def build_inventory(roots: Iterable[str], recursion_limit: int = -1,
                    list_files: Optional[Iterable[str]] = None) -> FileInventory:
    """Build an inventory with a one-off FileScanner."""
    return FileScanner(recursion_limit).build_inventory(roots, list_files or ())
