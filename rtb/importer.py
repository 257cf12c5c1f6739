"""
Import of Roam exports into the corpus store.

Pages are upserted by title and blocks by uid, depth-first in source
sibling order, so a parent row always exists before its children.
Unchanged rows are not written, which makes re-importing the same export
a no-op. A content change marks the block's embedding stale.

Each batch of pages is one transaction: a malformed block rolls back its
batch and stops the run, while earlier batches stay committed.
Pages and blocks missing from a newer export are left untouched.
"""

import logging
import sqlite3
from dataclasses import dataclass, fields
from typing import Callable, Iterable, Optional, Sequence

from .corpus_store import CorpusStore
from .errors import ImportValidationError
from .roam import ExportBlock, ExportPage
from .types import ItemParent, ItemRecord, PageParent, PageRecord, Parent, now_ms

logger = logging.getLogger(__name__)


@dataclass
class ImportStats:
    """Counters for one import run."""
    pages_seen: int = 0
    pages_inserted: int = 0
    pages_updated: int = 0
    items_seen: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_unchanged: int = 0
    items_marked_stale: int = 0
    batches_committed: int = 0
    orphaned_embeddings_deleted: int = 0

    def merge(self, other: "ImportStats") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


class GraphImporter:
    """
    Merges Roam pages into a CorpusStore.

    Args:
        store: Target store
        pages_per_batch: Pages committed per transaction
        clock: Source of "now" in epoch milliseconds, used when a changed
            block has no newer source edit time
    """

    def __init__(
        self,
        store: CorpusStore,
        *,
        pages_per_batch: int = 1,
        clock: Callable[[], int] = now_ms,
    ):
        if pages_per_batch < 1:
            raise ValueError("pages_per_batch must be at least 1")
        self._store = store
        self._pages_per_batch = pages_per_batch
        self._clock = clock

    def import_pages(self, pages: Sequence[ExportPage]) -> ImportStats:
        """
        Import pages in batches.

        Raises:
            ImportValidationError: for the first malformed block; its batch
                is rolled back and ``pages_committed`` counts the pages
                imported before it
        """
        total = ImportStats()
        seen_ids: set[str] = set()

        for start in range(0, len(pages), self._pages_per_batch):
            batch = pages[start:start + self._pages_per_batch]
            batch_stats = ImportStats()
            batch_seen: set[str] = set(seen_ids)
            try:
                with self._store.transaction():
                    for page in batch:
                        self._import_page(page, batch_stats, batch_seen)
            except ImportValidationError as e:
                e.pages_committed = total.pages_seen
                logger.warning(
                    "Import stopped at page batch %d (%d pages committed): %s",
                    total.batches_committed + 1, total.pages_seen, e,
                )
                raise

            batch_stats.batches_committed = 1
            total.merge(batch_stats)
            seen_ids = batch_seen

            if total.batches_committed % 256 == 1 or start + len(batch) >= len(pages):
                logger.info(
                    "Imported %d/%d pages (%d new items, %d updated)",
                    total.pages_seen, len(pages), total.items_inserted, total.items_updated,
                )

        total.orphaned_embeddings_deleted = self._store.delete_orphaned_embeddings()
        if total.orphaned_embeddings_deleted:
            logger.info("Deleted %d orphaned embeddings", total.orphaned_embeddings_deleted)
        return total

    def import_subtree(self, parent: Parent, blocks: Sequence[ExportBlock]) -> ImportStats:
        """
        Import blocks beneath an existing page or item, as one transaction.

        New blocks are appended after the parent's existing children.

        Raises:
            ImportValidationError: if the parent does not exist, or a block
                is malformed
        """
        stats = ImportStats()
        with self._store.transaction():
            if isinstance(parent, PageParent):
                if self._store.get_page(parent.title) is None:
                    raise ImportValidationError(
                        f"Parent page {parent.title!r} does not exist",
                        block_id=blocks[0].uid if blocks else None,
                    )
            elif self._store.get_item(parent.id) is None:
                raise ImportValidationError(
                    f"Parent block {parent.id!r} does not exist",
                    block_id=blocks[0].uid if blocks else parent.id,
                )
            orders = self._appended_orders(parent, blocks)
            self._import_children(parent, blocks, stats, set(), orders)
        stats.batches_committed = 1
        return stats

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _import_page(self, page: ExportPage, stats: ImportStats, seen: set[str]) -> None:
        if not page.title:
            raise ImportValidationError("Page without a title")
        stats.pages_seen += 1

        existing = self._store.get_page(page.title)
        if existing is None:
            self._store.insert_page(PageRecord(
                title=page.title, create_time=page.create_time, edit_time=page.edit_time,
            ))
            stats.pages_inserted += 1
        else:
            edit_time = max(existing.edit_time, page.edit_time)
            create_time = existing.create_time
            if create_time is None:
                create_time = page.create_time
            if (edit_time, create_time) != (existing.edit_time, existing.create_time):
                self._store.update_page_times(
                    page.title, create_time=create_time, edit_time=edit_time,
                )
                stats.pages_updated += 1

        self._import_children(PageParent(page.title), page.children, stats, seen)

    def _import_children(
        self,
        parent: Parent,
        blocks: Sequence[ExportBlock],
        stats: ImportStats,
        seen: set[str],
        orders: Optional[list[int]] = None,
    ) -> None:
        if orders is None:
            orders = sibling_orders(blocks)
        for block, order in zip(blocks, orders):
            self._upsert_block(block, parent, order, stats, seen)
            self._import_children(ItemParent(block.uid), block.children, stats, seen)

    def _appended_orders(self, parent: Parent, blocks: Sequence[ExportBlock]) -> list[int]:
        """
        Sibling orders for blocks added beneath a parent that may already
        have children.

        Positional orders start after the last stored sibling that is not
        among ``blocks``; explicit orders are kept as given. Any order still
        held by such a sibling is rejected.
        """
        uids = {block.uid for block in blocks}
        taken = {
            item.order_in_parent: item.id
            for item in self._store.children_of(parent)
            if item.id not in uids
        }
        offset = max(taken) + 1 if taken else 0

        orders = sibling_orders(blocks)
        used: dict[int, str] = {}
        for i, block in enumerate(blocks):
            if block.order is None:
                orders[i] += offset
            order = orders[i]
            if order in taken or order in used:
                other = taken.get(order) or used[order]
                raise ImportValidationError(
                    f"Block {block.uid!r} has the same order ({order}) as sibling {other!r}",
                    block_id=block.uid,
                )
            used[order] = block.uid
        return orders

    def _upsert_block(
        self,
        block: ExportBlock,
        parent: Parent,
        order: int,
        stats: ImportStats,
        seen: set[str],
    ) -> None:
        if not block.uid:
            raise ImportValidationError("Block without a uid")
        if block.uid in seen:
            raise ImportValidationError(
                f"Block {block.uid!r} appears more than once in the export",
                block_id=block.uid,
            )
        seen.add(block.uid)
        stats.items_seen += 1

        existing = self._store.get_item(block.uid)
        if existing is None:
            try:
                self._store.insert_item(ItemRecord(
                    id=block.uid,
                    parent=parent,
                    order_in_parent=order,
                    contents=block.string,
                    create_time=block.create_time,
                    edit_time=block.edit_time,
                    embedding_stale=True,
                ))
            except sqlite3.IntegrityError as e:
                raise ImportValidationError(
                    f"Block {block.uid!r} violates a corpus constraint: {e}",
                    block_id=block.uid,
                ) from e
            stats.items_inserted += 1
            stats.items_marked_stale += 1
            return

        changes = self._item_changes(existing, block, parent, order)
        if not changes:
            stats.items_unchanged += 1
            return

        if "parent" in changes and isinstance(parent, ItemParent):
            if self._store.is_ancestor(block.uid, parent.id):
                raise ImportValidationError(
                    f"Moving block {block.uid!r} under {parent.id!r} would create a cyclic parent chain",
                    block_id=block.uid,
                )
        try:
            self._store.update_item(block.uid, **changes)
        except sqlite3.IntegrityError as e:
            raise ImportValidationError(
                f"Block {block.uid!r} violates a corpus constraint: {e}",
                block_id=block.uid,
            ) from e
        stats.items_updated += 1
        if changes.get("embedding_stale") and not existing.embedding_stale:
            stats.items_marked_stale += 1
        if changes.get("contents") == "":
            # Blank blocks have no embedding
            self._store.delete_embedding(block.uid)

    def _item_changes(
        self,
        existing: ItemRecord,
        block: ExportBlock,
        parent: Parent,
        order: int,
    ) -> dict:
        """Column changes needed to bring a stored item in line with the export."""
        changes: dict = {}
        source_newer = (
            block.edit_time is not None
            and (existing.edit_time is None or block.edit_time > existing.edit_time)
        )
        if existing.contents != block.string:
            changes["contents"] = block.string
            changes["embedding_stale"] = True
            if source_newer:
                changes["edit_time"] = block.edit_time
            else:
                changes["edit_time"] = max(self._clock(), (existing.edit_time or 0) + 1)
        elif source_newer:
            changes["edit_time"] = block.edit_time

        if existing.create_time is None and block.create_time is not None:
            changes["create_time"] = block.create_time
        if existing.parent != parent:
            changes["parent"] = parent
        if existing.order_in_parent != order:
            changes["order_in_parent"] = order
        return changes


def sibling_orders(blocks: Iterable[ExportBlock]) -> list[int]:
    """
    Resolve order_in_parent for a list of siblings.

    A block's explicit ``order`` wins; otherwise its zero-based position is
    used. Orders must be non-negative and unique among the siblings.
    """
    orders: list[int] = []
    used: dict[int, str] = {}
    for position, block in enumerate(blocks):
        order = block.order if block.order is not None else position
        if order < 0:
            raise ImportValidationError(
                f"Block {block.uid!r} has negative order {order}", block_id=block.uid,
            )
        if order in used:
            raise ImportValidationError(
                f"Block {block.uid!r} has the same order ({order}) as sibling {used[order]!r}",
                block_id=block.uid,
            )
        used[order] = block.uid
        orders.append(order)
    return orders
