"""
Core API for the Roam third brain.

ThirdBrain ties the corpus store to the configured providers:

    from rtb.api import ThirdBrain

    with ThirdBrain("rtb.db") as brain:
        brain.import_export("roam-export.json")
        brain.update_embeddings()
        for page in brain.search_forest("what did I learn about sleep?"):
            print(page.title, page.best_score)
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from .answer import Answer, AnswerSynthesizer
from .config import StoreConfig, default_config_path, load_or_create_config
from .corpus_store import CorpusStore
from .embeddings import EmbeddingRunResult, EmbeddingStore
from .importer import GraphImporter, ImportStats
from .providers import CompletionProvider, EmbeddingProvider, get_registry
from .result_forest import ForestPage, ResultForest
from .roam import ExportBlock, ExportPage, load_export
from .search import SimilarityIndex
from .types import Parent, SearchResult

logger = logging.getLogger(__name__)


class ThirdBrain:
    """
    A Roam graph in SQLite, with embeddings, search and answers.

    Providers are created from the config on first use, so importing and
    read-only operations never touch the network.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        config: Optional[StoreConfig] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        completion_provider: Optional[CompletionProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            db_path: SQLite database file
            config: Pre-loaded config; otherwise rtb.toml beside the
                database is loaded (and created with defaults if missing)
            embedding_provider: Injected provider (skips registry lookup)
            completion_provider: Injected provider (skips registry lookup)
            sleep: Backoff sleep used between embedding retries
        """
        self._db_path = Path(db_path)
        if config is None:
            config = load_or_create_config(default_config_path(self._db_path))
        config.validate()
        self._config = config

        self._store = CorpusStore(self._db_path)
        self._embedding_provider = embedding_provider
        self._completion_provider = completion_provider
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    def _get_embedding_provider(self) -> EmbeddingProvider:
        if self._embedding_provider is None:
            self._embedding_provider = get_registry().create_embedding(
                self._config.embedding.name,
                self._config.embedding.params,
            )
        return self._embedding_provider

    def _get_completion_provider(self) -> CompletionProvider:
        if self._completion_provider is None:
            self._completion_provider = get_registry().create_completion(
                self._config.completion.name,
                self._config.completion.params,
            )
        return self._completion_provider

    def _embedding_store(self) -> EmbeddingStore:
        return EmbeddingStore(
            self._store,
            self._get_embedding_provider(),
            self._config.embedding.name,
            self._config.embeddings,
            sleep=self._sleep,
        )

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def _importer(self) -> GraphImporter:
        return GraphImporter(self._store, pages_per_batch=self._config.imports.pages_per_batch)

    def import_export(self, path: str | Path) -> ImportStats:
        """Import a Roam JSON export file."""
        pages = load_export(Path(path))
        logger.info("Importing %d pages from %s", len(pages), path)
        return self.import_pages(pages)

    def import_pages(self, pages: Sequence[ExportPage]) -> ImportStats:
        return self._importer().import_pages(pages)

    def import_subtree(self, parent: Parent, blocks: Sequence[ExportBlock]) -> ImportStats:
        """Import blocks beneath an existing page or item."""
        return self._importer().import_subtree(parent, blocks)

    def delete_page(self, title: str) -> bool:
        """Delete a page with all its items and their embeddings."""
        deleted = self._store.delete_page(title)
        if deleted:
            logger.info("Deleted page %r", title)
        return deleted

    def delete_item(self, id: str) -> bool:
        """Delete an item with its descendants and their embeddings."""
        deleted = self._store.delete_item(id)
        if deleted:
            logger.info("Deleted item %s", id)
        return deleted

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def update_embeddings(self, *, reset: bool = False,
                          batch_size: Optional[int] = None) -> EmbeddingRunResult:
        """Embed every pending item. See EmbeddingStore.update."""
        if not reset and self._store.pending_count() == 0:
            return EmbeddingRunResult()
        return self._embedding_store().update(reset=reset, batch_size=batch_size)

    def pending_count(self) -> int:
        return self._store.pending_count()

    # -------------------------------------------------------------------------
    # Search and answers
    # -------------------------------------------------------------------------

    def search(self, query: str, k: Optional[int] = None) -> list[SearchResult]:
        """The k items most similar to ``query``, best first."""
        if not query.strip():
            raise ValueError("Query must not be empty")
        k = self._config.search.top_k if k is None else k
        index = SimilarityIndex.from_store(self._store, self._config.search.metric)
        if not len(index) or k <= 0:
            return []
        query_vector = self._embedding_store().embed_query(query)
        return index.search(query_vector, k)

    def search_forest(self, query: str, k: Optional[int] = None) -> list[ForestPage]:
        """Search results grouped by page, with ancestors for context."""
        forest = ResultForest(self._store)
        forest.add_all(self.search(query, k))
        return forest.pages()

    def answer(self, query: str, k: Optional[int] = None) -> Answer:
        """Answer ``query`` from the corpus, citing the blocks used."""
        if not query.strip():
            raise ValueError("Query must not be empty")
        if self._store.count_embeddings() == 0:
            return Answer(query=query, text=None)
        synthesizer = AnswerSynthesizer(
            self._store,
            self._embedding_store(),
            self._get_completion_provider(),
            metric=self._config.search.metric,
            top_k=self._config.answer.top_k,
            max_tokens=self._config.answer.max_tokens,
        )
        return synthesizer.answer(query, k)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def stats(self) -> dict:
        return self._store.stats()

    @property
    def store(self) -> CorpusStore:
        return self._store

    @property
    def config(self) -> StoreConfig:
        """Public access to the configuration."""
        return self._config

    def close(self) -> None:
        """Close the database."""
        self._store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
