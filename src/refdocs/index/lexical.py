"""Lexical indexing and hierarchy-aware relevance scoring."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Sequence

from refdocs.config import ScoringConfig
from refdocs.errors import InvalidQueryError
from refdocs.index.sections import (
    Paragraph,
    detect_doc_type,
    extract_hierarchy,
    iter_sections,
    split_paragraphs,
    tokenize,
)
from refdocs.index.storage import DocumentStore
from refdocs.models import CachedDocument, IndexedTerm, SearchQuery, SearchResult

LOGGER = logging.getLogger(__name__)


def build_terms(key: str, content: str, scoring: ScoringConfig) -> List[IndexedTerm]:
    """Count terms of ``content`` and weight each by its shallowest section."""
    frequencies: Counter[str] = Counter()
    importance: Dict[str, float] = {}
    for section in iter_sections(content):
        weight = scoring.section_weight(section.level)
        for token in tokenize(section.text, min_length=scoring.min_term_length):
            frequencies[token] += 1
            if weight > importance.get(token, 0.0):
                importance[token] = weight
    return [
        IndexedTerm(
            document_key=key,
            term=term,
            frequency=frequencies[term],
            section_importance=importance[term],
        )
        for term in sorted(frequencies)
    ]


@dataclass(slots=True)
class IndexedDocument:
    """A document annotated for indexing, ready to be written in one transaction."""

    document: CachedDocument
    terms: List[IndexedTerm]


class LexicalIndexer:
    """Builds and stores the term index of a document."""

    def __init__(self, store: DocumentStore, scoring: ScoringConfig | None = None) -> None:
        self.store = store
        self.scoring = scoring or ScoringConfig()

    def prepare(self, document: CachedDocument) -> IndexedDocument:
        """Compute doc type, heading tree and terms without touching the store."""
        hierarchy = extract_hierarchy(document.content)
        annotated = replace(
            document,
            doc_type=detect_doc_type(document.content, document.key),
            hierarchy=json.dumps(hierarchy.to_dict(), ensure_ascii=True),
        )
        return IndexedDocument(
            document=annotated,
            terms=build_terms(document.key, document.content, self.scoring),
        )

    def index(self, key: str, content: str) -> List[IndexedTerm]:
        """Replace every index row of ``key`` with the terms of ``content``."""
        terms = build_terms(key, content, self.scoring)
        self.store.put_terms(key, terms)
        LOGGER.debug("Indexed %d terms for %s", len(terms), key)
        return terms


class RelevanceScorer:
    """Scores a piece of text against a query.

    ``base = tf * tf_weight + 1 / (depth + 1) * depth_weight`` where ``tf`` is
    the weighted count of query terms divided by the token count, then
    ``score = base * type_weight * exact_match_bonus``. Text containing none of
    the query terms scores 0.
    """

    def __init__(self, scoring: ScoringConfig) -> None:
        self.scoring = scoring

    def score(
        self,
        query_terms: Sequence[str],
        query_text: str,
        counts: Mapping[str, int],
        length: int,
        text: str,
        depth: int,
        doc_type: str,
    ) -> float:
        if length <= 0:
            return 0.0
        weights = self.scoring.term_weights
        matched = sum(counts.get(term, 0) * weights.get(term, 1.0) for term in query_terms)
        if matched <= 0:
            return 0.0

        term_frequency = matched / length
        depth_score = 1.0 / (depth + 1)
        base = term_frequency * self.scoring.tf_weight + depth_score * self.scoring.depth_weight

        bonus = self.scoring.exact_match_bonus if query_text.lower() in text.lower() else 1.0
        return base * self.scoring.type_weight(doc_type) * bonus

    def score_paragraph(
        self, query_terms: Sequence[str], query_text: str, paragraph: Paragraph, doc_type: str
    ) -> float:
        tokens = tokenize(paragraph.text, min_length=self.scoring.min_term_length)
        return self.score(
            query_terms, query_text, Counter(tokens), len(tokens), paragraph.text, paragraph.level, doc_type
        )


def query_terms(text: str, scoring: ScoringConfig) -> List[str]:
    """Unique query tokens in order of first appearance."""
    return list(dict.fromkeys(tokenize(text, min_length=scoring.min_term_length)))


class LexicalSearcher:
    """Ranks indexed documents for a query and extracts context excerpts."""

    def __init__(self, store: DocumentStore, scoring: ScoringConfig | None = None) -> None:
        self.store = store
        self.scoring = scoring or ScoringConfig()
        self.scorer = RelevanceScorer(self.scoring)

    def search(self, query: SearchQuery) -> List[SearchResult]:
        terms = query_terms(query.text, self.scoring)
        if not terms:
            raise InvalidQueryError(f"Query has no searchable terms: {query.text!r}")

        keys = self.store.candidate_keys(
            terms,
            doc_type=None if query.doc_type == "all" else query.doc_type,
            package=query.package_filter,
        )
        results: List[SearchResult] = []
        for key in keys:
            document = self.store.get(key)
            if document is None:
                continue
            result = self.score_document(document, self.store.get_terms(key), terms, query)
            if result is not None:
                results.append(result)

        results.sort(key=lambda r: (-r.relevance_score, r.document_key))
        LOGGER.debug("Lexical search %r: %d candidates, %d results", query.text, len(keys), len(results))
        return results[: query.limit]

    def best_paragraph(
        self, paragraphs: Sequence[Paragraph], terms: Sequence[str], query_text: str, doc_type: str
    ) -> int:
        """Index of the highest-scoring paragraph; the first one wins ties."""
        best_index, best_score = 0, -1.0
        for index, paragraph in enumerate(paragraphs):
            score = self.scorer.score_paragraph(terms, query_text, paragraph, doc_type)
            if score > best_score:
                best_index, best_score = index, score
        return best_index

    def excerpt(
        self, paragraphs: Sequence[Paragraph], center: int, context_depth: int
    ) -> str:
        start = max(0, center - context_depth)
        end = min(len(paragraphs), center + context_depth + 1)
        return "\n\n".join(p.text for p in paragraphs[start:end])

    def score_document(
        self,
        document: CachedDocument,
        stored_terms: Sequence[IndexedTerm],
        terms: Sequence[str],
        query: SearchQuery,
    ) -> Optional[SearchResult]:
        paragraphs = split_paragraphs(document.content)
        if not paragraphs:
            return None

        center = self.best_paragraph(paragraphs, terms, query.text, document.doc_type)
        counts = {t.term: t.frequency for t in stored_terms}
        score = self.scorer.score(
            terms,
            query.text,
            counts,
            sum(counts.values()),
            document.content,
            paragraphs[center].level,
            document.doc_type,
        )
        if score <= self.scoring.cutoff:
            return None

        wanted = set(terms)
        importance = max(
            (t.section_importance for t in stored_terms if t.term in wanted),
            default=self.scoring.min_section_weight,
        )
        return SearchResult(
            document_key=document.key,
            excerpt=self.excerpt(paragraphs, center, query.context_depth),
            hierarchy_path=list(paragraphs[center].path) if query.include_hierarchy else [],
            relevance_score=score,
            doc_type=document.doc_type,
            section_importance=importance,
        )
