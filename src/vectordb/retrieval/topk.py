"""
Bounded top-K selection.

One structure serves both funnel stages: the smallest Hamming distances in
stage 1 and the largest cosine similarities in stage 2. Items are ranked by
``(key, tie_break)``; with ``largest=True`` the key is negated, so the
tie-break (record id) always ascends.

The heap holds at most ``k`` entries with the worst-ranked entry on top, so
selecting from ``n`` items costs O(n log k).
"""

import heapq
from typing import Any, Callable, Generic, Iterable, List, TypeVar


T = TypeVar("T")


class _Entry:
    """Heap entry whose ordering is reversed, turning heapq into a max-heap."""

    __slots__ = ("rank", "item")

    def __init__(self, rank: tuple, item: Any):
        self.rank = rank
        self.item = item

    def __lt__(self, other: "_Entry") -> bool:
        return other.rank < self.rank


class BoundedTopK(Generic[T]):
    """
    Keep the ``k`` best items seen so far.

    Example:
        >>> top = BoundedTopK(2, key=lambda c: c.hamming_distance, tie_break=lambda c: c.id)
        >>> top.extend(candidates)
        >>> top.results()   # best first
    """

    def __init__(
        self,
        k: int,
        key: Callable[[T], float],
        tie_break: Callable[[T], Any],
        largest: bool = False,
    ):
        """
        Args:
            k: Maximum number of items kept (k <= 0 keeps nothing)
            key: Numeric score of an item
            tie_break: Secondary key; smaller wins among equal scores
            largest: If True keep the largest scores, else the smallest
        """
        self.k = k
        self._key = key
        self._tie_break = tie_break
        self._largest = largest
        self._heap: List[_Entry] = []

    def _rank(self, item: T) -> tuple:
        score = self._key(item)
        return (-score if self._largest else score, self._tie_break(item))

    def push(self, item: T) -> None:
        if self.k <= 0:
            return
        entry = _Entry(self._rank(item), item)
        if len(self._heap) < self.k:
            heapq.heappush(self._heap, entry)
        elif entry.rank < self._heap[0].rank:
            heapq.heapreplace(self._heap, entry)

    def extend(self, items: Iterable[T]) -> None:
        for item in items:
            self.push(item)

    def results(self) -> List[T]:
        """Kept items, best first."""
        return [entry.item for entry in sorted(self._heap, key=lambda e: e.rank)]

    def __len__(self) -> int:
        return len(self._heap)
