"""
Module for listing directory entries in a deterministic order.

Filesystems return directory entries in an unspecified order which can differ
between runs and platforms. The enumerator reads all entry names up front and
sorts them byte-wise so repeated scans of an unchanged tree always produce the
same sequence.
"""
import logging
import os
from typing import Callable, Generic, Iterator, List, TypeVar

from .errors import InventoryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Marks the end of a chain in the node arena
NIL = -1


class _LinkedArena(Generic[T]):
    """Doubly linked list stored as parallel arrays indexed by node handle."""

    def __init__(self, items: List[T]):
        count = len(items)
        self.values: List[T] = list(items)
        self.next: List[int] = [i + 1 for i in range(count)]
        self.prev: List[int] = [i - 1 for i in range(count)]
        if count:
            self.next[-1] = NIL
        self.head = 0 if count else NIL

    def walk(self) -> Iterator[T]:
        node = self.head
        while node != NIL:
            yield self.values[node]
            node = self.next[node]


def merge_sort_linked(items: List[T], key: Callable[[T], object]) -> List[T]:
    """Sort items with a bottom-up merge sort over a doubly linked list.

    Adjacent runs of ``insize`` nodes are merged pairwise, doubling ``insize``
    each pass, until a pass performs at most one merge. Equal keys keep the
    element from the left run first, so the sort is stable.

    Args:
        items: Items to sort
        key: Function returning the comparison key of an item

    Returns:
        New list containing the sorted items
    """
    arena = _LinkedArena(items)
    nxt, prv = arena.next, arena.prev
    keys = [key(item) for item in arena.values]
    insize = 1

    while arena.head != NIL:
        p = arena.head
        top = NIL
        tail = NIL
        nmerges = 0

        while p != NIL:
            nmerges += 1

            # Step insize places along from p to find the start of run q
            q = p
            psize = 0
            for _ in range(insize):
                psize += 1
                q = nxt[q]
                if q == NIL:
                    break
            qsize = insize

            while psize > 0 or (qsize > 0 and q != NIL):
                if psize == 0:
                    e, q = q, nxt[q]
                    qsize -= 1
                elif qsize == 0 or q == NIL:
                    e, p = p, nxt[p]
                    psize -= 1
                elif keys[p] <= keys[q]:
                    e, p = p, nxt[p]
                    psize -= 1
                else:
                    e, q = q, nxt[q]
                    qsize -= 1

                if tail != NIL:
                    nxt[tail] = e
                else:
                    top = e
                prv[e] = tail
                tail = e

            p = q

        nxt[tail] = NIL
        arena.head = top

        if nmerges <= 1:
            break
        insize *= 2

    return list(arena.walk())


class SortedDirectoryEnumerator:
    """Lists the entries of a directory sorted byte-wise by name.

    Every iteration re-reads the directory from scratch; the full set of
    names is captured and sorted before the first one is yielded.
    """

    def __init__(self, directory: str):
        self.directory = directory

    def entries(self) -> List[str]:
        """Read and sort the directory entry names.

        Returns:
            Sorted entry names, excluding ``.`` and ``..``

        Raises:
            InventoryError: If the directory cannot be read
        """
        try:
            names = os.listdir(self.directory)
        except OSError as e:
            raise InventoryError(f"Cannot open directory {self.directory}: {e}") from e

        names = [name for name in names if name not in (".", "..")]
        logger.debug(f"Sorting {len(names)} entries of {self.directory}")
        return merge_sort_linked(names, key=os.fsencode)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries())


def list_sorted(directory: str) -> List[str]:
    """Convenience wrapper returning the sorted entry names of a directory."""
    return SortedDirectoryEnumerator(directory).entries()
