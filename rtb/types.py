"""
Data types for the rtb corpus.
"""

import time
from dataclasses import dataclass
from typing import Optional, Union


def now_ms() -> int:
    """Current time in epoch milliseconds, the unit used by Roam exports."""
    return int(time.time() * 1000)


# -----------------------------------------------------------------------------
# Parent references
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PageParent:
    """An item sitting directly on a page."""
    title: str


@dataclass(frozen=True)
class ItemParent:
    """An item nested under another item."""
    id: str


Parent = Union[PageParent, ItemParent]


def parent_from_columns(parent_page_id: Optional[str], parent_item_id: Optional[str]) -> Parent:
    """Build a Parent from the two nullable parent columns.

    Raises ValueError if the XOR invariant does not hold.
    """
    if (parent_page_id is None) == (parent_item_id is None):
        raise ValueError(
            f"Item must have exactly one parent "
            f"(page={parent_page_id!r}, item={parent_item_id!r})"
        )
    if parent_page_id is not None:
        return PageParent(parent_page_id)
    return ItemParent(parent_item_id)


def parent_to_columns(parent: Parent) -> tuple[Optional[str], Optional[str]]:
    """Split a Parent into (parent_page_id, parent_item_id)."""
    if isinstance(parent, PageParent):
        return parent.title, None
    return None, parent.id


# -----------------------------------------------------------------------------
# Stored records
# -----------------------------------------------------------------------------

@dataclass
class PageRecord:
    """A stored page."""
    title: str
    create_time: Optional[int]
    edit_time: int


@dataclass
class ItemRecord:
    """A stored block."""
    id: str
    parent: Parent
    order_in_parent: int
    contents: str
    create_time: Optional[int] = None
    edit_time: Optional[int] = None
    embedding_stale: bool = True

    @property
    def page_title(self) -> Optional[str]:
        """Title of the owning page when this item sits directly on a page."""
        if isinstance(self.parent, PageParent):
            return self.parent.title
        return None


@dataclass(frozen=True)
class SearchResult:
    """A ranked search hit. Higher scores are more similar."""
    item_id: str
    score: float
