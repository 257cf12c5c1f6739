"""
Provider interfaces and implementations.

Concrete providers register themselves with the global registry when
their module is first needed; client libraries load on construction.
"""

from .base import CompletionProvider, EmbeddingProvider, ProviderRegistry, get_registry

__all__ = [
    "CompletionProvider",
    "EmbeddingProvider",
    "ProviderRegistry",
    "get_registry",
]
