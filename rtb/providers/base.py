"""
Provider interfaces for embeddings and completions, and the registry that
builds them from config. Providers satisfy the protocols structurally.
"""

from typing import Protocol, runtime_checkable

from ..errors import ConfigurationError, RtbError


# -----------------------------------------------------------------------------
# Embeddings
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Turns block text into fixed-length vectors.

    The same provider (and model) must be used for both indexing and
    querying; the corpus records the identity that produced its vectors.

    Example implementation:
        class HashEmbedding:
            model_name = "hash"

            @property
            def dimension(self) -> int:
                return 8

            def embed(self, text: str) -> list[float]:
                return self.embed_batch([text])[0]

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return [[float(b) for b in hashlib.md5(t.encode()).digest()[:8]]
                        for t in texts]
    """

    @property
    def model_name(self) -> str:
        """Model identifier, recorded in the corpus' embedding identity."""
        ...

    @property
    def dimension(self) -> int:
        """
        Length of every vector this provider returns.
        """
        ...

    def embed(self, text: str) -> list[float]:
        """
        Embed a single text (used for queries).

        Raises:
            ProviderError: on a transient failure (network, rate limit)
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed several texts with one provider request.

        Returns:
            List of embedding vectors, one per input text, in input order

        Raises:
            ProviderError: on a transient failure (network, rate limit)
        """
        ...


# -----------------------------------------------------------------------------
# Completion
# -----------------------------------------------------------------------------

@runtime_checkable
class CompletionProvider(Protocol):
    """
    Generates text from a system and a user prompt.

    Example implementation:
        class EchoCompletion:
            def generate(self, system, user, *, max_tokens=1024):
                return user[:max_tokens]
    """

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
    ) -> str:
        """
        Send a system+user prompt to the underlying LLM and return text.

        Args:
            system: System prompt
            user: User prompt
            max_tokens: Maximum tokens in response

        Returns:
            Generated text

        Raises:
            ProviderError: on a transient failure
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Name-to-class mapping for providers.

    Providers are registered by name and instantiated from configuration,
    so ``rtb.toml`` can name a provider rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("openai", OpenAIEmbedding)

        # Later, from config:
        provider = registry.create_embedding("openai", {"model": "text-embedding-3-small"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._completion_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load the provider modules, which register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True

        # These imports only register classes; client libraries are
        # imported when a provider is constructed.
        from . import embeddings  # noqa: F401
        from . import llm  # noqa: F401

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def register_completion(self, name: str, provider_class: type) -> None:
        """Register a completion provider class."""
        self._completion_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ConfigurationError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except RtbError:
            raise
        except ImportError as e:
            raise ConfigurationError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except TypeError as e:
            # Unknown or missing parameters in the config section
            raise ConfigurationError(
                f"Invalid parameters for {kind} provider '{name}': {e}"
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_completion(self, name: str, params: dict | None = None) -> CompletionProvider:
        """Create a completion provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("completion", name, self._completion_providers, params)

    # Introspection

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())

    def list_completion_providers(self) -> list[str]:
        """List registered completion provider names."""
        self._ensure_providers_loaded()
        return list(self._completion_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
