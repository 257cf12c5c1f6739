"""
rtb: a Roam Research export as a searchable, answerable corpus.

Quick start:
    from rtb import ThirdBrain

    with ThirdBrain("rtb.db") as brain:
        brain.import_export("roam-export.json")
        brain.update_embeddings()
        answer = brain.answer("what did I conclude about habits?")
"""

__version__ = "0.1.0"

from .api import ThirdBrain
from .answer import Answer
from .embeddings import EmbeddingRunResult
from .importer import ImportStats
from .types import ItemParent, PageParent, SearchResult

__all__ = [
    "Answer",
    "EmbeddingRunResult",
    "ImportStats",
    "ItemParent",
    "PageParent",
    "SearchResult",
    "ThirdBrain",
    "__version__",
]
