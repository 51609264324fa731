"""Tests for lexical indexing and relevance scoring."""

from __future__ import annotations

import json

import pytest

from refdocs.config import ScoringConfig
from refdocs.errors import InvalidQueryError
from refdocs.index.indexer import Indexer
from refdocs.index.lexical import LexicalIndexer, LexicalSearcher, RelevanceScorer, build_terms, query_terms
from refdocs.index.storage import DocumentStore
from refdocs.models import CachedDocument, SearchQuery


def make_document(key: str, content: str, package: str | None = None) -> CachedDocument:
    return CachedDocument(
        key=key,
        content=content,
        last_modified="Mon, 01 Jan 2024 00:00:00 GMT",
        last_checked="2024-01-01T00:00:00+00:00",
        package=package,
    )


@pytest.fixture
def store(tmp_path):
    store = DocumentStore(tmp_path / "lexical.db", dimension=4)
    yield store
    store.close()


@pytest.fixture
def index(store):
    """Return a helper that indexes ``content`` under ``key``."""
    indexer = Indexer(store, LexicalIndexer(store))

    def _index(key: str, content: str, package: str | None = None) -> None:
        indexer.index_document(make_document(key, content, package))

    return _index


@pytest.fixture
def searcher(store):
    return LexicalSearcher(store)


class TestBuildTerms:
    """Tests for build_terms."""

    def test_frequencies(self) -> None:
        terms = build_terms("/a", "# Runes\n\n$state provides reactive state.", ScoringConfig())
        by_term = {t.term: t for t in terms}

        assert by_term["state"].frequency == 2
        assert by_term["runes"].frequency == 1
        assert all(t.frequency >= 1 for t in terms)
        assert all(t.document_key == "/a" for t in terms)

    def test_importance_decreases_with_depth(self) -> None:
        content = "# Top\n\nalpha\n\n## Mid\n\nbeta\n\n###### Deep\n\ngamma\n"
        by_term = {t.term: t for t in build_terms("/a", content, ScoringConfig())}

        assert by_term["alpha"].section_importance > by_term["beta"].section_importance
        assert by_term["beta"].section_importance >= by_term["gamma"].section_importance
        assert by_term["gamma"].section_importance == 1.0

    def test_term_keeps_shallowest_weight(self) -> None:
        content = "# Top\n\nshared\n\n### Deep\n\nshared\n"
        by_term = {t.term: t for t in build_terms("/a", content, ScoringConfig())}
        assert by_term["shared"].section_importance == 2.0
        assert by_term["shared"].frequency == 2


class TestLexicalIndexer:
    """Tests for LexicalIndexer."""

    def test_prepare_sets_type_and_hierarchy(self, store) -> None:
        indexer = LexicalIndexer(store)
        prepared = indexer.prepare(make_document("/docs/api/stores", "# Stores\n\n## writable\n\ntext"))

        assert prepared.document.doc_type == "api"
        tree = json.loads(prepared.document.hierarchy)
        assert tree["children"][0]["title"] == "Stores"
        assert tree["children"][0]["children"][0]["title"] == "writable"
        assert store.get("/docs/api/stores") is None

    def test_index_replaces_terms(self, store) -> None:
        indexer = LexicalIndexer(store)
        indexer.index("/a", "first version")
        indexer.index("/a", "second edition")

        assert [t.term for t in store.get_terms("/a")] == ["edition", "second"]


class TestRelevanceScorer:
    """Tests for the scoring formula."""

    def test_no_matching_terms_scores_zero(self) -> None:
        scorer = RelevanceScorer(ScoringConfig())
        assert scorer.score(["state"], "state", {"other": 3}, 3, "other", 1, "general") == 0.0

    def test_shallower_depth_scores_higher(self) -> None:
        scorer = RelevanceScorer(ScoringConfig())
        shallow = scorer.score(["state"], "state", {"state": 1}, 4, "x", 1, "general")
        deep = scorer.score(["state"], "state", {"state": 1}, 4, "x", 3, "general")
        assert shallow > deep

    def test_type_weight_ordering(self) -> None:
        scorer = RelevanceScorer(ScoringConfig())
        scores = [
            scorer.score(["state"], "state", {"state": 1}, 4, "x", 1, doc_type)
            for doc_type in ("api", "error", "tutorial", "example", "general")
        ]
        assert scores == sorted(scores, reverse=True)
        assert len(set(scores)) == len(scores)

    def test_term_weight_override(self) -> None:
        scoring = ScoringConfig(term_weights={"state": 3.0})
        boosted = RelevanceScorer(scoring).score(["state"], "q", {"state": 1}, 4, "x", 1, "general")
        plain = RelevanceScorer(ScoringConfig()).score(["state"], "q", {"state": 1}, 4, "x", 1, "general")
        assert boosted > plain


class TestLexicalSearch:
    """End-to-end lexical search over an indexed store."""

    def test_shallow_section_ranks_first(self, index, searcher) -> None:
        """A level-1 match outranks a level-3 match of the same term."""
        index("/doc1", "# Runes\n\n$state provides reactive state.")
        index("/doc2", "### Misc\n\nmentions state once.")

        results = searcher.search(SearchQuery(text="state"))

        assert [r.document_key for r in results] == ["/doc1", "/doc2"]
        assert results[0].relevance_score > results[1].relevance_score
        assert results[0].hierarchy_path == ["Runes"]
        assert results[0].section_importance > results[1].section_importance

    def test_exact_match_scores_strictly_higher(self, index, searcher) -> None:
        index("/exact", "# Guide\n\nreactive state works here")
        index("/shuffled", "# Guide\n\nstate reactive works here")

        results = searcher.search(SearchQuery(text="reactive state"))
        scores = {r.document_key: r.relevance_score for r in results}

        assert scores["/exact"] > scores["/shuffled"]

    def test_results_above_cutoff(self, index, searcher) -> None:
        index("/strong", "# State\n\nstate state state")
        index("/weak", "###### Deep\n\n" + "filler words " * 50 + "state")

        results = searcher.search(SearchQuery(text="state"))

        assert all(r.relevance_score > ScoringConfig().cutoff for r in results)
        assert "/weak" not in [r.document_key for r in results]
        assert "/strong" in [r.document_key for r in results]

    def test_ties_broken_by_key(self, index, searcher) -> None:
        index("/b", "# Same\n\nidentical content here")
        index("/a", "# Same\n\nidentical content here")

        results = searcher.search(SearchQuery(text="identical"))

        assert [r.document_key for r in results] == ["/a", "/b"]
        assert results[0].relevance_score == results[1].relevance_score

    def test_api_documents_rank_above_general(self, index, searcher) -> None:
        index("/docs/general", "# Stores\n\nwritable store helper")
        index("/docs/api/stores", "# Stores\n\nwritable store helper")

        results = searcher.search(SearchQuery(text="writable"))

        assert results[0].document_key == "/docs/api/stores"
        assert results[0].doc_type == "api"

    def test_filters(self, index, searcher) -> None:
        index("/kit", "# Routing\n\nrouting in kit", package="kit")
        index("/docs/api/svelte", "# Routing\n\nrouting in svelte", package="svelte")

        by_package = searcher.search(SearchQuery(text="routing", package_filter="kit"))
        by_type = searcher.search(SearchQuery(text="routing", doc_type="api"))

        assert [r.document_key for r in by_package] == ["/kit"]
        assert [r.document_key for r in by_type] == ["/docs/api/svelte"]

    def test_limit(self, index, searcher) -> None:
        for name in ("a", "b", "c"):
            index(f"/{name}", "# Topic\n\nshared topic text")

        assert len(searcher.search(SearchQuery(text="topic", limit=2))) == 2

    def test_context_depth(self, index, searcher) -> None:
        content = "# Doc\n\nfirst paragraph\n\nsecond mentions needle\n\nthird paragraph\n\nfourth paragraph"
        index("/ctx", content)

        narrow = searcher.search(SearchQuery(text="needle", context_depth=0))[0]
        wide = searcher.search(SearchQuery(text="needle", context_depth=1))[0]

        assert narrow.excerpt == "second mentions needle"
        assert wide.excerpt == "first paragraph\n\nsecond mentions needle\n\nthird paragraph"

    def test_hierarchy_can_be_omitted(self, index, searcher) -> None:
        index("/doc1", "# Runes\n\n$state provides reactive state.")

        result = searcher.search(SearchQuery(text="state", include_hierarchy=False))[0]

        assert result.hierarchy_path == []

    def test_query_without_terms_rejected(self, searcher) -> None:
        with pytest.raises(InvalidQueryError):
            searcher.search(SearchQuery(text="a an ?"))

    def test_no_candidates(self, index, searcher) -> None:
        index("/doc1", "# Runes\n\n$state provides reactive state.")
        assert searcher.search(SearchQuery(text="nonexistent")) == []


def test_query_terms_unique_in_order() -> None:
    assert query_terms("State and state AND props", ScoringConfig()) == ["state", "and", "props"]
