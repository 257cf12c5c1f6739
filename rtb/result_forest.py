"""
Grouping of search hits into per-page trees.

Each hit pulls in its ancestor chain so it can be read in context. Pages
are ordered by their best hit; within a page, items follow the stored
sibling order.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from .corpus_store import CorpusStore
from .types import ItemParent, PageParent, Parent, SearchResult


@dataclass
class ForestItem:
    id: str
    contents: str
    # None for items included only as context for a hit below them
    score: Optional[float] = None
    children: list["ForestItem"] = field(default_factory=list)


@dataclass
class ForestPage:
    title: str
    best_score: float
    children: list[ForestItem] = field(default_factory=list)


class ResultForest:
    """
    Search hits with their ancestors, grouped by page.

    Usage:
        forest = ResultForest(store)
        forest.add_all(index.search(query, k))
        for page in forest.pages():
            ...
    """

    def __init__(self, store: CorpusStore):
        self._store = store
        self._scores: dict[str, float] = {}
        # page title -> ids of every hit and ancestor on that page
        self._included: dict[str, set[str]] = {}
        self._best: dict[str, float] = {}

    def add(self, result: SearchResult) -> None:
        """
        Add one hit.

        Raises:
            KeyError: if the item no longer exists
        """
        title, path = self._store.ancestors_of(result.item_id)
        self._included.setdefault(title, set()).update(path)
        self._scores[result.item_id] = result.score
        if title not in self._best or result.score > self._best[title]:
            self._best[title] = result.score

    def add_all(self, results: Iterable[SearchResult]) -> None:
        for result in results:
            self.add(result)

    def __len__(self) -> int:
        return len(self._scores)

    def pages(self) -> list[ForestPage]:
        """Pages by descending best score (ties by title), each with its subtree."""
        titles = sorted(self._best, key=lambda t: (-self._best[t], t))
        return [
            ForestPage(
                title=title,
                best_score=self._best[title],
                children=self._subtree(PageParent(title), self._included[title]),
            )
            for title in titles
        ]

    def _subtree(self, parent: Parent, included: set[str]) -> list[ForestItem]:
        return [
            ForestItem(
                id=child.id,
                contents=child.contents,
                score=self._scores.get(child.id),
                children=self._subtree(ItemParent(child.id), included),
            )
            for child in self._store.children_of(parent)
            if child.id in included
        ]


def render_search_markdown(query: str, pages: list[ForestPage]) -> str:
    """
    Render search results as a Roam bulleted list.

    Scored items show their score; context-only ancestors do not. Every
    item carries a ((block-id)) reference back into the graph.
    """
    lines = [f"Query: `{query}`"]
    for page in pages:
        lines.append(f"- `{page.best_score:.3f}` **[[{page.title}]]**")
        _render_items(lines, page.children, indent=1)
    return "\n".join(lines) + "\n"


def _render_items(lines: list[str], items: list[ForestItem], indent: int) -> None:
    for item in items:
        prefix = "\t" * indent + "- "
        if item.score is not None:
            prefix += f"`{item.score:.3f}` "
        lines.append(f"{prefix}{item.contents} (({item.id}))")
        _render_items(lines, item.children, indent + 1)
