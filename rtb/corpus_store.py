"""
Corpus store using SQLite.

Stores the flattened Roam graph and per-item embedding state:
- roam_page: pages, keyed by title
- roam_item: blocks, keyed by uid, with a parent back-reference to either
  a page or another item and an order among siblings
- item_embedding: the latest vector per item, with the text it was
  computed from
- store_meta: small key/value facts about the corpus (embedding identity)

The block tree is never materialized as objects; traversal is done with
key lookups (children_of, ancestors_of). Deleting a page or an item
cascades through the item tree and into item_embedding via foreign keys.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from .config import EmbeddingIdentity
from .types import (
    ItemRecord,
    PageParent,
    PageRecord,
    Parent,
    now_ms,
    parent_from_columns,
    parent_to_columns,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Vectors are stored as little-endian float32
VECTOR_DTYPE = np.dtype("<f4")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS roam_page (
    title TEXT NOT NULL PRIMARY KEY,
    create_time INTEGER,
    edit_time INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS roam_item (
    id TEXT NOT NULL PRIMARY KEY,
    parent_page_id TEXT NULL REFERENCES roam_page(title) ON DELETE CASCADE,
    parent_item_id TEXT NULL REFERENCES roam_item(id) ON DELETE CASCADE,
    order_in_parent INTEGER NOT NULL,
    contents TEXT NOT NULL,
    create_time INTEGER,
    edit_time INTEGER,
    embedding_stale INTEGER NOT NULL DEFAULT 1,

    CHECK ((parent_page_id IS NULL) != (parent_item_id IS NULL)),
    CHECK (order_in_parent >= 0)
);

CREATE INDEX IF NOT EXISTS idx_item_parent_page
ON roam_item(parent_page_id, order_in_parent);

CREATE INDEX IF NOT EXISTS idx_item_parent_item
ON roam_item(parent_item_id, order_in_parent);

CREATE TABLE IF NOT EXISTS item_embedding (
    item_id TEXT NOT NULL PRIMARY KEY REFERENCES roam_item(id) ON DELETE CASCADE,
    embedded_text TEXT NOT NULL,
    embedding BLOB NOT NULL,
    model TEXT NOT NULL,
    dimension INTEGER NOT NULL,
    embedded_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT NOT NULL PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Columns the importer may change on an existing item
_ITEM_UPDATABLE = frozenset({
    "parent_page_id", "parent_item_id", "order_in_parent", "contents",
    "create_time", "edit_time", "embedding_stale",
})


def vector_to_bytes(vec) -> bytes:
    """Serialise a vector to a compact little-endian float32 blob."""
    return np.asarray(vec, dtype=VECTOR_DTYPE).tobytes()


def bytes_to_vector(buf: bytes) -> np.ndarray:
    """Deserialise a float32 blob back to a vector."""
    return np.frombuffer(buf, dtype=VECTOR_DTYPE).astype(np.float32)


class CorpusStore:
    """
    SQLite-backed store for the Roam corpus and its embeddings.

    The connection runs with manual transaction control: single writes
    autocommit, and multi-statement units of work go through
    ``transaction()`` so a failure rolls back the whole unit.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" is accepted)
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        if str(self._db_path) != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so batches can use BEGIN IMMEDIATE ... COMMIT
        self._conn = sqlite3.connect(str(self._db_path), isolation_level=None)
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA temp_store = MEMORY")

        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema version {version} is newer than supported ({SCHEMA_VERSION})"
            )
        self._conn.executescript(_SCHEMA)
        if version < SCHEMA_VERSION:
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            logger.debug("Initialized corpus schema v%d at %s", SCHEMA_VERSION, self._db_path)

    @property
    def path(self) -> Path:
        return Path(self._db_path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run a block as one atomic unit.

        Nested use joins the outermost transaction; only the outermost
        block commits or rolls back.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        self._conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._tx_depth = 0

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------

    def get_page(self, title: str) -> Optional[PageRecord]:
        """Get a page by title."""
        row = self._conn.execute(
            "SELECT title, create_time, edit_time FROM roam_page WHERE title = ?",
            (title,),
        ).fetchone()
        if row is None:
            return None
        return PageRecord(title=row["title"], create_time=row["create_time"],
                          edit_time=row["edit_time"])

    def insert_page(self, page: PageRecord) -> None:
        self._conn.execute(
            "INSERT INTO roam_page (title, create_time, edit_time) VALUES (?, ?, ?)",
            (page.title, page.create_time, page.edit_time),
        )

    def update_page_times(self, title: str, *, create_time: Optional[int],
                          edit_time: int) -> bool:
        """Overwrite a page's timestamps. Returns True if the page exists."""
        cursor = self._conn.execute(
            "UPDATE roam_page SET create_time = ?, edit_time = ? WHERE title = ?",
            (create_time, edit_time, title),
        )
        return cursor.rowcount > 0

    def list_page_titles(self) -> list[str]:
        cursor = self._conn.execute("SELECT title FROM roam_page ORDER BY title")
        return [row["title"] for row in cursor]

    def delete_page(self, title: str) -> bool:
        """
        Delete a page and, by cascade, every item beneath it.

        Returns:
            True if the page existed and was deleted
        """
        cursor = self._conn.execute("DELETE FROM roam_page WHERE title = ?", (title,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ItemRecord:
        return ItemRecord(
            id=row["id"],
            parent=parent_from_columns(row["parent_page_id"], row["parent_item_id"]),
            order_in_parent=row["order_in_parent"],
            contents=row["contents"],
            create_time=row["create_time"],
            edit_time=row["edit_time"],
            embedding_stale=bool(row["embedding_stale"]),
        )

    def get_item(self, id: str) -> Optional[ItemRecord]:
        """Get an item by id."""
        row = self._conn.execute("SELECT * FROM roam_item WHERE id = ?", (id,)).fetchone()
        if row is None:
            return None
        return self._row_to_item(row)

    def get_items(self, ids: list[str]) -> dict[str, ItemRecord]:
        """
        Get multiple items by id.

        Returns:
            Dict mapping id → ItemRecord (missing ids omitted)
        """
        results: dict[str, ItemRecord] = {}
        # Stay below SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" * len(chunk))
            cursor = self._conn.execute(
                f"SELECT * FROM roam_item WHERE id IN ({placeholders})", chunk
            )
            for row in cursor:
                results[row["id"]] = self._row_to_item(row)
        return results

    def insert_item(self, item: ItemRecord) -> None:
        parent_page_id, parent_item_id = parent_to_columns(item.parent)
        self._conn.execute("""
            INSERT INTO roam_item
            (id, parent_page_id, parent_item_id, order_in_parent, contents,
             create_time, edit_time, embedding_stale)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            item.id, parent_page_id, parent_item_id, item.order_in_parent,
            item.contents, item.create_time, item.edit_time, int(item.embedding_stale),
        ))

    def update_item(self, id: str, **changes) -> bool:
        """
        Update selected columns of an existing item.

        Accepts ``parent`` (a Parent) in place of the two parent columns.

        Returns:
            True if the item was found and updated
        """
        if "parent" in changes:
            page_id, item_id = parent_to_columns(changes.pop("parent"))
            changes["parent_page_id"] = page_id
            changes["parent_item_id"] = item_id
        if not changes:
            return False
        unknown = set(changes) - _ITEM_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update item columns: {sorted(unknown)}")
        if "embedding_stale" in changes:
            changes["embedding_stale"] = int(changes["embedding_stale"])

        assignments = ", ".join(f"{col} = ?" for col in changes)
        cursor = self._conn.execute(
            f"UPDATE roam_item SET {assignments} WHERE id = ?",
            (*changes.values(), id),
        )
        return cursor.rowcount > 0

    def children_of(self, parent: Parent) -> list[ItemRecord]:
        """Direct children of a page or item, in sibling order."""
        if isinstance(parent, PageParent):
            cursor = self._conn.execute("""
                SELECT * FROM roam_item WHERE parent_page_id = ?
                ORDER BY order_in_parent ASC, id ASC
            """, (parent.title,))
        else:
            cursor = self._conn.execute("""
                SELECT * FROM roam_item WHERE parent_item_id = ?
                ORDER BY order_in_parent ASC, id ASC
            """, (parent.id,))
        return [self._row_to_item(row) for row in cursor]

    def ancestors_of(self, id: str) -> tuple[str, list[str]]:
        """
        Get the path from a page down to an item.

        Returns:
            (page title, [root-level item id, ..., id])

        Raises:
            KeyError: if the item (or one of its ancestors) is missing
            ValueError: if the parent chain loops
        """
        path: list[str] = []
        seen: set[str] = set()
        current = id
        while True:
            row = self._conn.execute(
                "SELECT id, parent_page_id, parent_item_id FROM roam_item WHERE id = ?",
                (current,),
            ).fetchone()
            if row is None:
                raise KeyError(current)
            if current in seen:
                raise ValueError(f"Cyclic parent chain at item {current!r}")
            seen.add(current)
            path.append(current)
            if row["parent_page_id"] is not None:
                path.reverse()
                return row["parent_page_id"], path
            current = row["parent_item_id"]

    def is_ancestor(self, ancestor_id: str, id: str) -> bool:
        """True if ``ancestor_id`` is ``id`` or lies on its parent chain."""
        current: Optional[str] = id
        seen: set[str] = set()
        while current is not None:
            if current == ancestor_id:
                return True
            if current in seen:
                raise ValueError(f"Cyclic parent chain at item {current!r}")
            seen.add(current)
            row = self._conn.execute(
                "SELECT parent_item_id FROM roam_item WHERE id = ?", (current,)
            ).fetchone()
            current = row["parent_item_id"] if row else None
        return False

    def delete_item(self, id: str) -> bool:
        """
        Delete an item and, by cascade, its descendants and their embeddings.

        Returns:
            True if the item existed and was deleted
        """
        cursor = self._conn.execute("DELETE FROM roam_item WHERE id = ?", (id,))
        return cursor.rowcount > 0

    def sibling_order_conflicts(self) -> list[tuple[str, int, list[str]]]:
        """
        Find siblings that share an order_in_parent.

        Import rejects such ties, but items left untouched by a newer export
        can collide with reordered siblings.

        Returns:
            List of (parent key, order, [item ids]); parent key is the page
            title or parent item id.
        """
        cursor = self._conn.execute("""
            SELECT COALESCE(parent_page_id, parent_item_id) AS parent_key,
                   order_in_parent, GROUP_CONCAT(id, char(31)) AS ids
            FROM roam_item
            GROUP BY parent_page_id, parent_item_id, order_in_parent
            HAVING COUNT(*) > 1
            ORDER BY parent_key, order_in_parent
        """)
        return [
            (row["parent_key"], row["order_in_parent"], sorted(row["ids"].split("\x1f")))
            for row in cursor
        ]

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def pending_batch(self, limit: int, after_id: Optional[str] = None) -> list[tuple[str, str]]:
        """
        Next items that need an embedding, in ascending id order.

        An item is pending when it is flagged stale or has no embedding,
        and its contents are non-empty.

        Returns:
            List of (item id, contents)
        """
        cursor = self._conn.execute("""
            SELECT i.id, i.contents
            FROM roam_item i
            LEFT JOIN item_embedding e ON e.item_id = i.id
            WHERE (i.embedding_stale = 1 OR e.item_id IS NULL)
              AND length(i.contents) > 0
              AND i.id > ?
            ORDER BY i.id ASC
            LIMIT ?
        """, (after_id or "", limit))
        return [(row["id"], row["contents"]) for row in cursor]

    def pending_count(self) -> int:
        cursor = self._conn.execute("""
            SELECT COUNT(*)
            FROM roam_item i
            LEFT JOIN item_embedding e ON e.item_id = i.id
            WHERE (i.embedding_stale = 1 OR e.item_id IS NULL)
              AND length(i.contents) > 0
        """)
        return cursor.fetchone()[0]

    def write_embeddings(self, rows: list[tuple[str, str, np.ndarray]], model: str) -> int:
        """
        Store one batch of vectors atomically.

        Each row is (item id, embedded text, vector). The stale flag is
        cleared only where the item's contents still equal the embedded
        text, so an edit racing the provider call stays pending.

        Returns:
            Number of embeddings written
        """
        now = now_ms()
        with self.transaction():
            for item_id, text, vector in rows:
                vector = np.asarray(vector, dtype=np.float32)
                self._conn.execute("""
                    INSERT OR REPLACE INTO item_embedding
                    (item_id, embedded_text, embedding, model, dimension, embedded_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (item_id, text, vector_to_bytes(vector), model, int(vector.shape[0]), now))
                self._conn.execute(
                    "UPDATE roam_item SET embedding_stale = 0 WHERE id = ? AND contents = ?",
                    (item_id, text),
                )
        return len(rows)

    def delete_embedding(self, item_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM item_embedding WHERE item_id = ?", (item_id,))
        return cursor.rowcount > 0

    def get_embedding(self, item_id: str) -> Optional[np.ndarray]:
        row = self._conn.execute(
            "SELECT embedding FROM item_embedding WHERE item_id = ?", (item_id,)
        ).fetchone()
        if row is None:
            return None
        return bytes_to_vector(row["embedding"])

    def load_embeddings(self) -> tuple[list[str], np.ndarray]:
        """
        Load every stored embedding, ordered by item id.

        Returns:
            (item ids, float32 matrix of shape (n, dimension)). An empty
            corpus yields ([], array of shape (0, 0)).
        """
        cursor = self._conn.execute("""
            SELECT e.item_id, e.embedding
            FROM item_embedding e
            JOIN roam_item i ON i.id = e.item_id
            ORDER BY e.item_id ASC
        """)
        ids: list[str] = []
        blobs: list[bytes] = []
        for row in cursor:
            ids.append(row["item_id"])
            blobs.append(row["embedding"])
        if not ids:
            return [], np.zeros((0, 0), dtype=np.float32)

        dimension = len(blobs[0]) // VECTOR_DTYPE.itemsize
        if any(len(b) != len(blobs[0]) for b in blobs):
            raise ValueError("Stored embeddings have mixed dimensionality")
        matrix = np.frombuffer(b"".join(blobs), dtype=VECTOR_DTYPE)
        return ids, matrix.reshape(len(ids), dimension).astype(np.float32)

    def count_embeddings(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM item_embedding").fetchone()[0]

    def reset_embeddings(self) -> int:
        """
        Delete all embeddings and mark every item stale.

        Returns:
            Number of embeddings deleted
        """
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM item_embedding")
            deleted = cursor.rowcount
            self._conn.execute("UPDATE roam_item SET embedding_stale = 1")
            self.delete_meta("embedding_provider")
            self.delete_meta("embedding_model")
            self.delete_meta("embedding_dimension")
        return deleted

    def delete_orphaned_embeddings(self) -> int:
        """Delete embeddings whose item no longer exists."""
        cursor = self._conn.execute("""
            DELETE FROM item_embedding
            WHERE NOT EXISTS (SELECT 1 FROM roam_item ri WHERE ri.id = item_embedding.item_id)
        """)
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM store_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO store_meta (key, value) VALUES (?, ?)", (key, value)
        )

    def delete_meta(self, key: str) -> None:
        self._conn.execute("DELETE FROM store_meta WHERE key = ?", (key,))

    def get_embedding_identity(self) -> Optional[EmbeddingIdentity]:
        """The identity recorded when the first embedding was stored, if any."""
        provider = self.get_meta("embedding_provider")
        model = self.get_meta("embedding_model")
        dimension = self.get_meta("embedding_dimension")
        if provider is None or model is None or dimension is None:
            return None
        return EmbeddingIdentity(provider=provider, model=model, dimension=int(dimension))

    def set_embedding_identity(self, identity: EmbeddingIdentity) -> None:
        with self.transaction():
            self.set_meta("embedding_provider", identity.provider)
            self.set_meta("embedding_model", identity.model)
            self.set_meta("embedding_dimension", str(identity.dimension))

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def count_pages(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM roam_page").fetchone()[0]

    def count_items(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM roam_item").fetchone()[0]

    def stats(self) -> dict:
        """Corpus statistics."""
        identity = self.get_embedding_identity()
        return {
            "pages": self.count_pages(),
            "items": self.count_items(),
            "embedded": self.count_embeddings(),
            "pending": self.pending_count(),
            "embedding_identity": identity.key if identity else None,
            "sibling_order_conflicts": len(self.sibling_order_conflicts()),
            "db_path": str(self._db_path),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            try:
                self._conn.execute("PRAGMA optimize")
            except sqlite3.Error:
                pass  # optimize is advisory
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
