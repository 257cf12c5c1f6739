"""Tests for grouping search hits into per-page trees."""

import pytest

from rtb.importer import GraphImporter
from rtb.result_forest import ResultForest, render_search_markdown
from rtb.types import SearchResult


@pytest.fixture
def forest(store, sample_pages):
    GraphImporter(store).import_pages(sample_pages)
    return ResultForest(store)


class TestResultForest:

    def test_hit_pulls_in_ancestors(self, forest):
        forest.add(SearchResult("s2", 0.9))
        [page] = forest.pages()

        assert page.title == "Sleep"
        assert page.best_score == 0.9
        [s1] = page.children
        assert s1.id == "s1"
        assert s1.score is None
        assert [c.id for c in s1.children] == ["s2"]
        assert s1.children[0].score == 0.9
        assert s1.children[0].contents == "Avoid screens before bed"

    def test_pages_ordered_by_best_hit(self, forest):
        forest.add_all([
            SearchResult("e2", 0.8),
            SearchResult("s3", 0.5),
            SearchResult("s2", 0.95),
        ])
        assert [p.title for p in forest.pages()] == ["Sleep", "Exercise"]
        assert forest.pages()[0].best_score == 0.95
        assert len(forest) == 3

    def test_siblings_keep_stored_order(self, forest):
        forest.add_all([SearchResult("s3", 0.9), SearchResult("s1", 0.1)])
        [page] = forest.pages()
        assert [c.id for c in page.children] == ["s1", "s3"]
        # s1 is a hit, but its child s2 is not
        assert page.children[0].children == []

    def test_empty(self, forest):
        assert forest.pages() == []
        assert len(forest) == 0

    def test_unknown_item(self, forest):
        with pytest.raises(KeyError):
            forest.add(SearchResult("ghost", 1.0))


class TestRenderSearch:

    def test_markdown(self, forest):
        forest.add_all([SearchResult("s2", 0.9), SearchResult("e1", 0.42)])
        text = render_search_markdown("sleep hygiene", forest.pages())

        assert text == (
            "Query: `sleep hygiene`\n"
            "- `0.900` **[[Sleep]]**\n"
            "\t- Sleep at least eight hours ((s1))\n"
            "\t\t- `0.900` Avoid screens before bed ((s2))\n"
            "- `0.420` **[[Exercise]]**\n"
            "\t- `0.420` Run three times a week ((e1))\n"
        )

    def test_no_results(self):
        assert render_search_markdown("nothing", []) == "Query: `nothing`\n"
