"""
In-memory similarity search over the corpus' embeddings.

The whole embedding table is loaded into one float32 matrix (rows in
ascending item id) and scored with a single matrix-vector product.
Higher scores are always better: euclidean distance is negated.
"""

import logging
from typing import Sequence

import numpy as np

from .config import SUPPORTED_METRICS
from .corpus_store import CorpusStore
from .errors import EmbeddingDimensionError
from .types import SearchResult

logger = logging.getLogger(__name__)


class SimilarityIndex:
    """
    Top-k similarity search.

    Args:
        ids: Item id for each matrix row
        matrix: float32 array of shape (n, dimension)
        metric: "cosine" (default), "dot" or "euclidean"
    """

    def __init__(self, ids: Sequence[str], matrix: np.ndarray, metric: str = "cosine"):
        if metric not in SUPPORTED_METRICS:
            raise ValueError(f"Unknown metric {metric!r}. Supported: {', '.join(SUPPORTED_METRICS)}")
        matrix = np.asarray(matrix, dtype=np.float32)
        if len(ids) != matrix.shape[0]:
            raise ValueError(f"{len(ids)} ids for {matrix.shape[0]} vectors")

        # Row position doubles as the id tie-breaker, so rows are kept in id order
        order = sorted(range(len(ids)), key=lambda i: ids[i])
        self._ids = [ids[i] for i in order]
        self._matrix = matrix[order] if len(ids) else matrix
        self._metric = metric

        if metric == "cosine" and len(self._ids):
            norms = np.linalg.norm(self._matrix, axis=1)
            # Zero vectors stay zero and score 0 against everything
            safe = np.where(norms > 0, norms, 1.0).astype(np.float32)
            self._matrix = self._matrix / safe[:, None]

    @classmethod
    def from_store(cls, store: CorpusStore, metric: str = "cosine") -> "SimilarityIndex":
        """Load every stored embedding."""
        ids, matrix = store.load_embeddings()
        logger.debug("Loaded %d vectors for %s search", len(ids), metric)
        return cls(ids, matrix, metric)

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def metric(self) -> str:
        return self._metric

    @property
    def dimension(self) -> int:
        return int(self._matrix.shape[1]) if self._matrix.ndim == 2 else 0

    def scores(self, query) -> np.ndarray:
        """Score every row against ``query``; aligned with the id order."""
        q = np.asarray(query, dtype=np.float32).reshape(-1)
        if q.shape[0] != self.dimension:
            raise EmbeddingDimensionError(
                f"Query has dimension {q.shape[0]}, index has {self.dimension}"
            )
        if self._metric == "euclidean":
            return -np.linalg.norm(self._matrix - q, axis=1)
        if self._metric == "cosine":
            norm = float(np.linalg.norm(q))
            if norm == 0.0:
                return np.zeros(len(self._ids), dtype=np.float32)
            q = q / norm
        return self._matrix @ q

    def search(self, query, k: int) -> list[SearchResult]:
        """
        The ``k`` most similar items, best first, ties by ascending id.

        Returns an empty list for an empty index or ``k <= 0``; ``k``
        beyond the corpus size returns every item.
        """
        n = len(self._ids)
        if k <= 0 or n == 0:
            return []
        scores = self.scores(query)

        if k >= n:
            candidates = np.arange(n)
        else:
            # k-th best score; every row at least that good is a candidate,
            # so ties straddling the cutoff are resolved by id below
            threshold = np.partition(scores, n - k)[n - k]
            candidates = np.flatnonzero(scores >= threshold)

        # lexsort's last key is primary: score descending, then row (= id) ascending
        ranked = candidates[np.lexsort((candidates, -scores[candidates]))][:k]
        return [SearchResult(item_id=self._ids[i], score=float(scores[i])) for i in ranked]
