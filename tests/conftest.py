"""
Shared pytest fixtures for rtb tests.

Provides mock providers so no test touches the network.
"""

import hashlib
import json
import re
from pathlib import Path
from typing import Optional

import pytest

from rtb.api import ThirdBrain
from rtb.config import EmbeddingSettings, ProviderConfig, StoreConfig
from rtb.corpus_store import CorpusStore
from rtb.errors import ProviderError
from rtb.providers import get_registry
from rtb.roam import ExportBlock, ExportPage, parse_export


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Vectors come from ``vectors`` when the text is listed there, otherwise
    from a hash of the text. Batch calls can be made to fail.
    """

    model_name = "mock-model"

    def __init__(self, dimension: int = 16, vectors: Optional[dict] = None,
                 fail_after: Optional[int] = None):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.embed_calls = 0
        self.batch_calls = 0
        self.batches: list[list[str]] = []
        # 1-based batch call numbers that raise ProviderError
        self.fail_calls: set[int] = set()
        # Every batch call after this many raises ProviderError
        self.fail_after = fail_after

    def _vector(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.md5(text.encode()).digest()
        return [(digest[i % len(digest)] / 255.0) - 0.5 for i in range(self.dimension)]

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        return self._vector(text)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        self.batches.append(list(texts))
        if self.batch_calls in self.fail_calls or (
            self.fail_after is not None and self.batch_calls > self.fail_after
        ):
            raise ProviderError(f"simulated outage on batch call {self.batch_calls}")
        return [self._vector(t) for t in texts]


class MockCompletionProvider:
    """Mock completion provider; by default cites the first block in the notes."""

    def __init__(self, response: Optional[str] = None):
        self.response = response
        self.calls: list[tuple[str, str, int]] = []

    def generate(self, system: str, user: str, *, max_tokens: int = 1024) -> str:
        self.calls.append((system, user, max_tokens))
        if self.response is not None:
            return self.response
        match = re.search(r"\[\*\]\(\(\(([^)]+)\)\)\)", user)
        if match:
            return f"According to your notes (({match.group(1)})), yes."
        return "I don't know."


SAMPLE_EXPORT = [
    {
        "title": "Sleep",
        "create-time": 1000,
        "edit-time": 2000,
        "children": [
            {
                "uid": "s1",
                "string": "Sleep at least eight hours",
                "create-time": 1000,
                "edit-time": 1500,
                "children": [
                    {"uid": "s2", "string": "Avoid screens before bed", "edit-time": 1500},
                ],
            },
            {"uid": "s3", "string": "Naps under twenty minutes", "edit-time": 1600},
        ],
    },
    {
        "title": "Exercise",
        "edit-time": 3000,
        "children": [
            {
                "uid": "e1",
                "string": "Run three times a week",
                "edit-time": 2500,
                "heading": 2,
                "children": [
                    {"uid": "e2", "string": "Stretch after running", "edit-time": 2500},
                ],
            },
        ],
    },
]


def make_block(uid: str, string: str, *children: ExportBlock,
               edit_time: Optional[int] = None, order: Optional[int] = None) -> ExportBlock:
    return ExportBlock(uid=uid, string=string, edit_time=edit_time, order=order,
                       children=list(children))


def make_page(title: str, *children: ExportBlock, edit_time: int = 1000,
              create_time: Optional[int] = None) -> ExportPage:
    return ExportPage(title=title, edit_time=edit_time, create_time=create_time,
                      children=list(children))


@pytest.fixture
def sample_export_data() -> list[dict]:
    return json.loads(json.dumps(SAMPLE_EXPORT))


@pytest.fixture
def sample_pages(sample_export_data) -> list[ExportPage]:
    return parse_export(sample_export_data)


@pytest.fixture
def sample_export_file(tmp_path, sample_export_data) -> Path:
    path = tmp_path / "export.json"
    path.write_text(json.dumps(sample_export_data))
    return path


@pytest.fixture
def store(tmp_path):
    """A fresh corpus store in a temp directory."""
    s = CorpusStore(tmp_path / "rtb.db")
    yield s
    s.close()


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def mock_completion_provider():
    return MockCompletionProvider()


@pytest.fixture
def test_config(tmp_path) -> StoreConfig:
    """Config naming the mock providers, with no backoff delay."""
    return StoreConfig(
        path=tmp_path / "rtb.toml",
        embedding=ProviderConfig("mock"),
        completion=ProviderConfig("mock"),
        embeddings=EmbeddingSettings(backoff_base=0.0),
    )


@pytest.fixture
def brain(tmp_path, test_config, mock_embedding_provider, mock_completion_provider):
    """A ThirdBrain wired to mock providers."""
    b = ThirdBrain(
        tmp_path / "rtb.db",
        config=test_config,
        embedding_provider=mock_embedding_provider,
        completion_provider=mock_completion_provider,
        sleep=lambda seconds: None,
    )
    yield b
    b.close()


@pytest.fixture
def registered_mocks():
    """Register the mock providers under the name "mock" (for CLI tests)."""
    registry = get_registry()
    registry.register_embedding("mock", MockEmbeddingProvider)
    registry.register_completion("mock", MockCompletionProvider)
    return registry


@pytest.fixture(autouse=True)
def isolated_error_log(tmp_path, monkeypatch):
    """Keep crash logs out of the real home directory."""
    monkeypatch.setenv("RTB_HOME", str(tmp_path / "rtb-home"))
