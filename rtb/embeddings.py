"""
Embedding maintenance for the corpus.

EmbeddingStore walks the pending queue (items that are stale or have no
vector) in ascending id order, one provider request per batch, and
commits each batch on its own. Transient provider failures are retried
with exponential backoff; once the attempt ceiling is hit the run stops
and reports how many items were updated before it gave up.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .config import EmbeddingIdentity, EmbeddingSettings
from .corpus_store import CorpusStore
from .errors import EmbeddingDimensionError, ProviderError
from .providers.base import EmbeddingProvider

logger = logging.getLogger(__name__)

# Failures worth another attempt on the same batch
RETRYABLE_ERRORS = (ProviderError, ConnectionError, TimeoutError)


@dataclass
class EmbeddingRunResult:
    """Outcome of one update-embeddings run."""
    updated: int = 0
    batches: int = 0
    retries: int = 0
    aborted: bool = False
    error: Optional[str] = None
    # Items still pending when the run ended
    remaining: int = 0
    reset: int = 0

    def message(self) -> str:
        if self.aborted:
            return f"Aborted after retries: {self.updated} updated ({self.error})"
        return f"{self.updated} updated"


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), maximum)


def coerce_vectors(raw, expected: int) -> list[np.ndarray]:
    """
    Validate a provider response and convert it to float32 vectors.

    Raises:
        ProviderError: if the response has the wrong count or holds
            anything other than flat finite numeric vectors
    """
    try:
        count = len(raw)
    except TypeError:
        raise ProviderError(f"Embedding response is not a sequence: {type(raw).__name__}")
    if count != expected:
        raise ProviderError(f"Embedding response has {count} vectors, expected {expected}")

    vectors = []
    for i, item in enumerate(raw):
        try:
            vec = np.asarray(item, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise ProviderError(f"Embedding {i} is not numeric: {e}") from e
        if vec.ndim != 1 or vec.shape[0] == 0:
            raise ProviderError(f"Embedding {i} has shape {vec.shape}, expected a flat vector")
        if not np.all(np.isfinite(vec)):
            raise ProviderError(f"Embedding {i} contains non-finite values")
        vectors.append(vec)
    return vectors


class EmbeddingStore:
    """
    Keeps item embeddings in step with item contents.

    Args:
        store: Corpus store holding items and vectors
        provider: Embedding provider
        provider_name: Registry name of the provider, recorded as part of
            the corpus' embedding identity
        settings: Batch size and retry policy
        sleep: Called with the backoff delay in seconds between attempts
    """

    def __init__(
        self,
        store: CorpusStore,
        provider: EmbeddingProvider,
        provider_name: str,
        settings: Optional[EmbeddingSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._provider = provider
        self._provider_name = provider_name
        self._settings = settings or EmbeddingSettings()
        self._sleep = sleep

    @property
    def identity(self) -> EmbeddingIdentity:
        return EmbeddingIdentity(
            provider=self._provider_name,
            model=getattr(self._provider, "model_name", "unknown"),
            dimension=self._provider.dimension,
        )

    def check_identity(self, *, record: bool = False) -> EmbeddingIdentity:
        """
        Compare the provider with the identity recorded for the corpus.

        Args:
            record: Store the provider's identity if none is recorded yet

        Raises:
            EmbeddingDimensionError: if a different provider, model or
                dimension produced the stored vectors
        """
        current = self.identity
        stored = self._store.get_embedding_identity()
        if stored is None:
            if record:
                logger.info(
                    "Recording embedding identity: %s/%s (%dd)",
                    current.provider, current.model, current.dimension,
                )
                self._store.set_embedding_identity(current)
            return current
        if stored != current:
            raise EmbeddingDimensionError(
                f"Corpus was embedded with {stored.key} but the configured provider is "
                f"{current.key}. Run 'rtb update-embeddings --reset' to re-embed everything."
            )
        logger.debug("Embedding identity unchanged: %s", current.key)
        return current

    def pending_count(self) -> int:
        return self._store.pending_count()

    def embed_query(self, text: str) -> np.ndarray:
        """Embed a search query with the corpus' provider."""
        identity = self.check_identity()
        vectors = coerce_vectors([self._provider.embed(text)], 1)
        self._check_dimension(vectors, identity.dimension)
        return vectors[0]

    def update(self, *, reset: bool = False, batch_size: Optional[int] = None) -> EmbeddingRunResult:
        """
        Embed every pending item.

        Args:
            reset: Delete all vectors and the recorded identity first
            batch_size: Override the configured batch size

        Returns:
            EmbeddingRunResult; ``aborted`` is set when a batch exhausted
            its attempts, and earlier batches remain committed

        Raises:
            EmbeddingDimensionError: on an identity or dimension mismatch
        """
        result = EmbeddingRunResult()
        size = batch_size or self._settings.batch_size
        if size < 1:
            raise ValueError("batch_size must be at least 1")

        if reset:
            result.reset = self._store.reset_embeddings()
            logger.info("Reset %d embeddings", result.reset)

        total = self._store.pending_count()
        if not total:
            return result
        identity = self.check_identity(record=True)
        logger.info("Embedding %d items in batches of %d", total, size)

        last_id: Optional[str] = None
        while True:
            batch = self._store.pending_batch(size, after_id=last_id)
            if not batch:
                break
            ids = [item_id for item_id, _ in batch]
            texts = [text for _, text in batch]

            vectors = self._embed_with_retry(texts, result)
            if vectors is None:
                result.aborted = True
                result.remaining = self._store.pending_count()
                logger.warning(
                    "Embedding run aborted at %s after %d attempts: %d updated, %d pending",
                    ids[0], self._settings.max_attempts, result.updated, result.remaining,
                )
                return result

            self._check_dimension(vectors, identity.dimension)
            result.updated += self._store.write_embeddings(
                list(zip(ids, texts, vectors)), identity.model,
            )
            result.batches += 1
            last_id = ids[-1]
            logger.info("Embedded %d/%d items", result.updated, total)

        result.remaining = self._store.pending_count()
        return result

    def _embed_with_retry(self, texts: list[str], result: EmbeddingRunResult) -> Optional[list[np.ndarray]]:
        """One batch request with retries. Returns None when attempts run out."""
        attempts = self._settings.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return coerce_vectors(self._provider.embed_batch(texts), len(texts))
            except RETRYABLE_ERRORS as e:
                result.error = f"{type(e).__name__}: {e}"
                if attempt == attempts:
                    break
                delay = backoff_delay(
                    attempt, self._settings.backoff_base, self._settings.backoff_max,
                )
                result.retries += 1
                logger.info(
                    "Embedding batch failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, attempts, delay, e,
                )
                self._sleep(delay)
        return None

    @staticmethod
    def _check_dimension(vectors: list[np.ndarray], dimension: int) -> None:
        for vec in vectors:
            if vec.shape[0] != dimension:
                raise EmbeddingDimensionError(
                    f"Provider returned a {vec.shape[0]}-dimensional vector, "
                    f"corpus uses {dimension}"
                )
