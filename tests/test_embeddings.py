"""
Tests for the embedding lifecycle: staleness, batching, retries and
identity checks.
"""

import numpy as np
import pytest

from conftest import MockEmbeddingProvider, make_block, make_page

from rtb.config import EmbeddingIdentity, EmbeddingSettings
from rtb.embeddings import EmbeddingStore, backoff_delay, coerce_vectors
from rtb.errors import EmbeddingDimensionError, ProviderError
from rtb.importer import GraphImporter


def make_store(store, provider, sleeps=None, **settings):
    settings.setdefault("backoff_base", 1.0)
    return EmbeddingStore(
        store, provider, "mock", EmbeddingSettings(**settings),
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
    )


@pytest.fixture
def imported(store, sample_pages):
    GraphImporter(store).import_pages(sample_pages)
    return store


class TestUpdate:

    def test_embeds_everything_pending(self, imported, mock_embedding_provider):
        result = make_store(imported, mock_embedding_provider).update()

        assert result.updated == 5
        assert not result.aborted
        assert result.remaining == 0
        assert result.message() == "5 updated"
        assert imported.pending_count() == 0
        assert imported.count_embeddings() == 5
        for item_id in ("s1", "s2", "s3", "e1", "e2"):
            assert not imported.get_item(item_id).embedding_stale

    def test_records_identity_on_first_use(self, imported, mock_embedding_provider):
        make_store(imported, mock_embedding_provider).update()
        assert imported.get_embedding_identity() == EmbeddingIdentity("mock", "mock-model", 16)

    def test_stored_vector_matches_provider(self, imported, mock_embedding_provider):
        make_store(imported, mock_embedding_provider).update()
        expected = mock_embedding_provider.embed("Run three times a week")
        assert np.allclose(imported.get_embedding("e1"), expected)

    def test_batches_in_ascending_id_order(self, imported, mock_embedding_provider):
        make_store(imported, mock_embedding_provider, batch_size=2).update()

        assert mock_embedding_provider.batch_calls == 3
        texts_by_id = {i.id: i.contents for i in imported.get_items(["e1", "e2", "s1", "s2", "s3"]).values()}
        expected = [
            [texts_by_id["e1"], texts_by_id["e2"]],
            [texts_by_id["s1"], texts_by_id["s2"]],
            [texts_by_id["s3"]],
        ]
        assert mock_embedding_provider.batches == expected

    def test_batch_size_override(self, imported, mock_embedding_provider):
        make_store(imported, mock_embedding_provider, batch_size=512).update(batch_size=1)
        assert mock_embedding_provider.batch_calls == 5

    def test_nothing_pending(self, imported, mock_embedding_provider):
        embeddings = make_store(imported, mock_embedding_provider)
        embeddings.update()
        calls = mock_embedding_provider.batch_calls

        result = embeddings.update()
        assert result.updated == 0
        assert result.message() == "0 updated"
        assert mock_embedding_provider.batch_calls == calls

    def test_single_edit_reembeds_exactly_one_item(self, imported, sample_pages, mock_embedding_provider):
        embeddings = make_store(imported, mock_embedding_provider)
        embeddings.update()

        sample_pages[1].children[0].children[0].string = "Stretch before and after running"
        GraphImporter(imported).import_pages(sample_pages)
        result = embeddings.update()

        assert result.updated == 1
        assert mock_embedding_provider.batches[-1] == ["Stretch before and after running"]

    def test_empty_blocks_are_never_sent(self, store, mock_embedding_provider):
        GraphImporter(store).import_pages([
            make_page("P", make_block("a", ""), make_block("b", "words")),
        ])
        result = make_store(store, mock_embedding_provider).update()

        assert result.updated == 1
        assert mock_embedding_provider.batches == [["words"]]
        assert store.get_embedding("a") is None

    def test_edit_during_provider_call_stays_pending(self, imported):
        class EditingProvider(MockEmbeddingProvider):
            def embed_batch(self, texts):
                imported.update_item("s3", contents="edited while embedding")
                return super().embed_batch(texts)

        result = make_store(imported, EditingProvider()).update()

        assert result.updated == 5
        assert imported.get_item("s3").embedding_stale
        assert imported.pending_batch(10) == [("s3", "edited while embedding")]


class TestRetry:

    def test_backoff_delay(self):
        assert [backoff_delay(n, 1.0, 4.0) for n in range(1, 6)] == [1.0, 2.0, 4.0, 4.0, 4.0]
        assert backoff_delay(3, 0.5, 60.0) == 2.0

    def test_transient_failure_is_retried(self, imported, mock_embedding_provider):
        mock_embedding_provider.fail_calls = {1, 2}
        sleeps = []
        result = make_store(imported, mock_embedding_provider, sleeps, max_attempts=3).update()

        assert result.updated == 5
        assert result.retries == 2
        assert not result.aborted
        assert sleeps == [1.0, 2.0]

    def test_partial_success_is_reported(self, store):
        """Two of three items embedded before the provider gives out."""
        GraphImporter(store).import_pages([
            make_page("P", make_block("a", "one"), make_block("b", "two"), make_block("c", "three")),
        ])
        provider = MockEmbeddingProvider(fail_after=1)
        sleeps = []
        result = make_store(store, provider, sleeps, batch_size=2, max_attempts=4,
                            backoff_max=3.0).update()

        assert result.aborted
        assert result.updated == 2
        assert "2 updated" in result.message()
        assert "simulated outage" in result.error
        assert result.remaining == 1
        assert provider.batch_calls == 1 + 4
        assert sleeps == [1.0, 2.0, 3.0]
        # Committed batches survive the abort
        assert store.count_embeddings() == 2
        assert store.pending_batch(10) == [("c", "three")]

    def test_aborted_run_resumes(self, store):
        GraphImporter(store).import_pages([
            make_page("P", make_block("a", "one"), make_block("b", "two"), make_block("c", "three")),
        ])
        make_store(store, MockEmbeddingProvider(fail_after=1), batch_size=2, max_attempts=1).update()

        result = make_store(store, MockEmbeddingProvider(), batch_size=2).update()
        assert result.updated == 1
        assert store.pending_count() == 0

    def test_malformed_response_is_retried(self, imported):
        class ShortProvider(MockEmbeddingProvider):
            def embed_batch(self, texts):
                vectors = super().embed_batch(texts)
                return vectors[:-1] if self.batch_calls == 1 else vectors

        result = make_store(imported, ShortProvider(), max_attempts=2).update()
        assert result.updated == 5
        assert result.retries == 1

    def test_connection_error_is_retried(self, imported):
        class FlakyProvider(MockEmbeddingProvider):
            def embed_batch(self, texts):
                self.batch_calls += 1
                if self.batch_calls == 1:
                    raise ConnectionError("reset by peer")
                return [self._vector(t) for t in texts]

        result = make_store(imported, FlakyProvider(), max_attempts=2).update()
        assert result.updated == 5

    def test_unexpected_errors_propagate(self, imported):
        class BrokenProvider(MockEmbeddingProvider):
            def embed_batch(self, texts):
                raise KeyError("bug")

        with pytest.raises(KeyError):
            make_store(imported, BrokenProvider()).update()


class TestIdentity:

    def test_wrong_dimension_is_fatal(self, imported):
        class LyingProvider(MockEmbeddingProvider):
            def _vector(self, text):
                return super()._vector(text)[:8]

        provider = LyingProvider()
        with pytest.raises(EmbeddingDimensionError):
            make_store(imported, provider, max_attempts=5).update()
        # No retries for a dimension problem
        assert provider.batch_calls == 1
        assert imported.count_embeddings() == 0

    def test_model_change_requires_reset(self, imported, mock_embedding_provider):
        make_store(imported, mock_embedding_provider).update()
        imported.update_item("s1", contents="changed", embedding_stale=True)

        other = MockEmbeddingProvider(dimension=8)
        other.model_name = "other-model"
        with pytest.raises(EmbeddingDimensionError, match="--reset"):
            make_store(imported, other).update()

        result = make_store(imported, other).update(reset=True)
        assert result.reset == 5
        assert result.updated == 5
        assert imported.get_embedding_identity() == EmbeddingIdentity("mock", "other-model", 8)
        assert imported.get_embedding("e1").shape == (8,)

    def test_embed_query_checks_identity(self, imported, mock_embedding_provider):
        make_store(imported, mock_embedding_provider).update()
        other = MockEmbeddingProvider(dimension=32)
        with pytest.raises(EmbeddingDimensionError):
            make_store(imported, other).embed_query("anything")

    def test_embed_query(self, imported, mock_embedding_provider):
        embeddings = make_store(imported, mock_embedding_provider)
        embeddings.update()
        vec = embeddings.embed_query("Naps under twenty minutes")
        assert vec.dtype == np.float32
        assert np.allclose(vec, imported.get_embedding("s3"))


class TestCoerceVectors:

    def test_valid(self):
        vectors = coerce_vectors([[1, 2], [3, 4]], 2)
        assert [v.tolist() for v in vectors] == [[1.0, 2.0], [3.0, 4.0]]

    def test_wrong_count(self):
        with pytest.raises(ProviderError, match="expected 3"):
            coerce_vectors([[1.0]], 3)

    def test_non_numeric(self):
        with pytest.raises(ProviderError):
            coerce_vectors([["a", "b"]], 1)

    def test_nested(self):
        with pytest.raises(ProviderError, match="flat"):
            coerce_vectors([[[1.0], [2.0]]], 1)

    def test_not_finite(self):
        with pytest.raises(ProviderError, match="non-finite"):
            coerce_vectors([[1.0, float("nan")]], 1)

    def test_not_a_sequence(self):
        with pytest.raises(ProviderError):
            coerce_vectors(None, 1)
