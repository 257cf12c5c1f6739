"""
Embedding providers: OpenAI's embeddings API and a local Ollama server.
"""

import logging
import os
from typing import Optional

from ..errors import ConfigurationError, ProviderError
from .base import get_registry

logger = logging.getLogger(__name__)


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embeddings API.

    Requires: api_key parameter or OPENAI_API_KEY environment variable.

    Default model is text-embedding-ada-002 (1536 dimensions). Others are
    selected in rtb.toml, e.g.:

        [embedding]
        name = "openai"
        model = "text-embedding-3-small"
        dimension = 512   # optional; text-embedding-3 models only
    """

    MODEL_DIMENSIONS = {
        "text-embedding-ada-002": 1536,
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
    }

    def __init__(
        self,
        model: str = "text-embedding-ada-002",
        api_key: Optional[str] = None,
        dimension: Optional[int] = None,
        timeout: float = 60.0,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIEmbedding requires 'openai' library")

        self._model = model
        self._dimension = dimension or self.MODEL_DIMENSIONS.get(model)
        if self._dimension is None:
            raise ConfigurationError(
                f"Unknown dimension for OpenAI model {model!r}; "
                "set 'dimension' in the [embedding] section"
            )

        # Only the text-embedding-3 models can be shortened
        self._request_dimensions = None
        default = self.MODEL_DIMENSIONS.get(model)
        if dimension and default and dimension != default:
            if not model.startswith("text-embedding-3"):
                raise ConfigurationError(
                    f"OpenAI model {model!r} does not accept a custom dimension ({dimension})"
                )
            self._request_dimensions = dimension

        key = api_key or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ConfigurationError("OpenAI API key required. Set OPENAI_API_KEY")

        # Retries are handled per batch by EmbeddingStore
        self._client = OpenAI(api_key=key, timeout=timeout, max_retries=0)

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        import openai

        try:
            kwargs = {"model": self._model, "input": texts}
            if self._request_dimensions:
                kwargs["dimensions"] = self._request_dimensions
            response = self._client.embeddings.create(**kwargs)
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(f"OpenAI rejected the API key: {e}") from e
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI embeddings request failed: {e}") from e

        # The API may return entries out of order; index restores input order
        data = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in data]


class OllamaEmbedding:
    """
    Embedding provider using Ollama's /api/embed endpoint.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    The dimension is discovered from the first embedding unless given.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: Optional[str] = None,
        dimension: Optional[int] = None,
    ):
        from .ollama_utils import ollama_base_url, ollama_ensure_model

        self._model = model
        self.base_url = ollama_base_url(base_url)
        self._dimension = dimension
        ollama_ensure_model(self.base_url, self._model)

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
            logger.debug("Ollama model %s has dimension %d", self._model, self._dimension)
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        from .ollama_utils import ollama_post

        data = ollama_post(
            self.base_url, "/api/embed",
            {"model": self._model, "input": texts},
            timeout=(10, 300),
            what="embedding",
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise ProviderError(f"Ollama embedding response has no 'embeddings': {str(data)[:200]}")
        return embeddings


# Register providers
_registry = get_registry()
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
