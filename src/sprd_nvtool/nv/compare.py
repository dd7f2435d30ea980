"""
NV Blob Comparison
==================

Item-by-item comparison of two parsed NV blobs, typically a backup and a
fresh read from the device.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from sprd_nvtool.nv.items import NVItem, mapping_key


class DiffStatus(Enum):
    """Outcome of comparing one NV id."""
    IDENTICAL = "Identical"
    DIFFERENT = "Different"
    ONLY_IN_FIRST = "Only in first"
    ONLY_IN_SECOND = "Only in second"


@dataclass(frozen=True)
class NVDifference:
    """
    Comparison result for one NV id.

    Attributes:
        id: NV identifier
        status: How the two blobs differ for this id
        first: Item from the first blob (None if absent)
        second: Item from the second blob (None if absent)
    """
    id: int
    status: DiffStatus
    first: Optional[NVItem]
    second: Optional[NVItem]

    @property
    def name(self) -> str:
        """Display name taken from whichever side has the item."""
        for item in (self.first, self.second):
            if item is not None and item.name:
                return item.name
        return mapping_key(self.id)


def _first_by_id(items: Iterable[NVItem]) -> dict[int, NVItem]:
    index: dict[int, NVItem] = {}
    for item in items:
        index.setdefault(item.id, item)
    return index


def compare_nv(
    first: Iterable[NVItem],
    second: Iterable[NVItem],
    include_identical: bool = True,
) -> list[NVDifference]:
    """
    Compare two item lists by id.

    When an id occurs more than once in a blob only its first occurrence
    is compared, matching the lookup rule used everywhere else.

    Args:
        first: Items of the first blob.
        second: Items of the second blob.
        include_identical: Also report ids whose payloads match.

    Returns:
        Differences sorted by id.
    """
    left = _first_by_id(first)
    right = _first_by_id(second)

    results = []
    for item_id in sorted(left.keys() | right.keys()):
        a = left.get(item_id)
        b = right.get(item_id)

        if b is None:
            status = DiffStatus.ONLY_IN_FIRST
        elif a is None:
            status = DiffStatus.ONLY_IN_SECOND
        elif a.data == b.data:
            status = DiffStatus.IDENTICAL
        else:
            status = DiffStatus.DIFFERENT

        if status is DiffStatus.IDENTICAL and not include_identical:
            continue
        results.append(NVDifference(item_id, status, a, b))

    return results
