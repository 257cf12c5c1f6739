"""
Retrieval-augmented answers over the corpus.

The query is embedded, the nearest items are gathered into a result
forest, and the forest is rendered as Roam markdown notes for the
completion model. Every bullet ends with a ``[*](((block-id)))`` link so
the model can cite the blocks it used.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .corpus_store import CorpusStore
from .embeddings import EmbeddingStore
from .providers.base import CompletionProvider
from .result_forest import ForestItem, ForestPage, ResultForest
from .search import SimilarityIndex

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You answer questions using a personal database of notes, together with your own general knowledge.

You will be given a question, then a selection of notes chosen for their semantic similarity to it, then the question again. The notes are written in Roam Research markdown: page titles appear in double square brackets, and blocks are referenced by ID in double parentheses.

Each page is introduced by its title, and each bullet ends with a link to its block ID, for example:

```
[[Page Title 1]]
- Text of a top-level bullet. [*](((BlockId1)))
\t- A child bullet mentioning [[Page Title 2]]. [*](((BlockId2)))
[[Page Title 2]]
- Another top-level bullet. [*](((BlockId3)))
```

Write your answer in Roam Research markdown:

- Footnote a block: [¹](((BlockId)))
- Link inline text to a block: [some text](((BlockId)))
- Link to a page: [[Page Title]]
- Link inline text to a page: [some text]([[Page Title]])

Only link to a [[Page Title]] or a ((BlockId)) that appears in the notes. Cite the blocks your answer relies on. Be concise."""

_BLOCK_REF_RE = re.compile(r"\(\(([A-Za-z0-9_-]+)\)\)")


@dataclass
class Answer:
    """
    A synthesized answer.

    ``text`` is the model's response verbatim, or None when nothing was
    retrieved and the model was not asked.
    """
    query: str
    text: Optional[str]
    # Retrieved item ids, best first
    context_ids: list[str] = field(default_factory=list)
    # Ids from the notes that the response references, in first-mention order
    cited_ids: list[str] = field(default_factory=list)

    @property
    def no_context(self) -> bool:
        return self.text is None


def render_notes(pages: list[ForestPage]) -> str:
    """Render a result forest as Roam markdown notes for the prompt."""
    lines: list[str] = []

    def walk(items: list[ForestItem], indent: int) -> None:
        for item in items:
            lines.append("\t" * indent + f"- {item.contents} [*]((({item.id})))")
            walk(item.children, indent + 1)

    for page in pages:
        lines.append(f"[[{page.title}]]")
        walk(page.children, 0)
    return "\n".join(lines)


def note_ids(pages: list[ForestPage]) -> set[str]:
    ids: set[str] = set()

    def walk(items: list[ForestItem]) -> None:
        for item in items:
            ids.add(item.id)
            walk(item.children)

    for page in pages:
        walk(page.children)
    return ids


def build_user_prompt(query: str, notes: str) -> str:
    return (
        f"The question is:\n{query}\n\n"
        f"Here are some notes that might help you answer it:\n\n{notes}\n\n"
        f"Here is the question again, for reference:\n{query}"
    )


def extract_cited_ids(text: str, known_ids: set[str]) -> list[str]:
    """Block ids referenced as ((id)) in ``text``, limited to ``known_ids``, deduplicated."""
    cited: list[str] = []
    for match in _BLOCK_REF_RE.finditer(text):
        block_id = match.group(1)
        if block_id in known_ids and block_id not in cited:
            cited.append(block_id)
    return cited


def render_answer_markdown(answer: Answer) -> str:
    """Render an answer for output, with the blocks it cites."""
    lines = [f"Query: `{answer.query}` #GPT"]
    if answer.no_context:
        lines.append("No context available: the corpus has no embedded notes to answer from.")
        return "\n".join(lines) + "\n"
    lines.append(answer.text)
    if answer.cited_ids:
        lines.append("")
        lines.append("Sources:")
        lines.extend(f"- (({block_id}))" for block_id in answer.cited_ids)
    return "\n".join(lines) + "\n"


class AnswerSynthesizer:
    """
    Answers questions from the corpus.

    Args:
        store: Corpus store
        embeddings: Embeds the query with the corpus' provider
        completion: Completion provider
        metric: Similarity metric for retrieval
        top_k: Default number of items to retrieve
        max_tokens: Response token limit
    """

    def __init__(
        self,
        store: CorpusStore,
        embeddings: EmbeddingStore,
        completion: CompletionProvider,
        *,
        metric: str = "cosine",
        top_k: int = 64,
        max_tokens: int = 1024,
    ):
        self._store = store
        self._embeddings = embeddings
        self._completion = completion
        self._metric = metric
        self._top_k = top_k
        self._max_tokens = max_tokens

    def answer(self, query: str, k: Optional[int] = None) -> Answer:
        """
        Answer ``query`` from the ``k`` most similar items.

        With nothing retrieved, returns an Answer with ``no_context`` set
        and does not call the completion provider.
        """
        k = self._top_k if k is None else k
        index = SimilarityIndex.from_store(self._store, self._metric)
        if not len(index) or k <= 0:
            logger.info("No embedded items to answer from")
            return Answer(query=query, text=None)

        results = index.search(self._embeddings.embed_query(query), k)
        forest = ResultForest(self._store)
        forest.add_all(results)
        pages = forest.pages()

        logger.info("Answering from %d items on %d pages", len(results), len(pages))
        text = self._completion.generate(
            SYSTEM_PROMPT,
            build_user_prompt(query, render_notes(pages)),
            max_tokens=self._max_tokens,
        )
        return Answer(
            query=query,
            text=text,
            context_ids=[r.item_id for r in results],
            cited_ids=extract_cited_ids(text, note_ids(pages)),
        )
