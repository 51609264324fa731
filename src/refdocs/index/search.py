"""Search interface selecting the lexical or vector strategy."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from refdocs.config import ScoringConfig
from refdocs.embedding.vectors import VectorEngine
from refdocs.index.lexical import LexicalSearcher, query_terms
from refdocs.index.sections import split_paragraphs
from refdocs.index.storage import DocumentStore
from refdocs.models import SearchQuery, SearchResult

LOGGER = logging.getLogger(__name__)


class Searcher:
    """High-level API to query the document store."""

    def __init__(
        self,
        store: DocumentStore,
        vectors: Optional[VectorEngine] = None,
        *,
        strategy: Literal["lexical", "vector"] = "lexical",
        scoring: ScoringConfig | None = None,
        min_similarity: float = 0.0,
    ) -> None:
        self.store = store
        self.vectors = vectors
        self.strategy = strategy
        self.scoring = scoring or ScoringConfig()
        self.min_similarity = min_similarity
        self.lexical = LexicalSearcher(store, self.scoring)

    def search(self, query: SearchQuery) -> List[SearchResult]:
        if self.strategy == "vector":
            if self.vectors is None or self.store.get_stats()["embedding_count"] == 0:
                LOGGER.warning("No embeddings available, falling back to lexical search")
                return self.lexical.search(query)
            results = self._vector_search(self.vectors, query)
            if results:
                return results
            LOGGER.info("Vector search returned nothing for %r, falling back to lexical search", query.text)
        return self.lexical.search(query)

    def _vector_search(self, vectors: VectorEngine, query: SearchQuery) -> List[SearchResult]:
        embedding = vectors.embed(query.text)
        hits = vectors.nearest(
            embedding,
            query.limit,
            doc_type=None if query.doc_type == "all" else query.doc_type,
            package=query.package_filter,
        )
        terms = query_terms(query.text, self.scoring)
        floor = max(self.min_similarity, self.scoring.cutoff)

        results: List[SearchResult] = []
        for key, similarity in hits:
            if similarity <= floor:
                continue
            document = self.store.get(key)
            if document is None:
                continue
            paragraphs = split_paragraphs(document.content)
            if not paragraphs:
                continue
            center = (
                self.lexical.best_paragraph(paragraphs, terms, query.text, document.doc_type)
                if terms
                else 0
            )
            results.append(
                SearchResult(
                    document_key=key,
                    excerpt=self.lexical.excerpt(paragraphs, center, query.context_depth),
                    hierarchy_path=list(paragraphs[center].path) if query.include_hierarchy else [],
                    relevance_score=similarity,
                    doc_type=document.doc_type,
                    section_importance=self.scoring.section_weight(paragraphs[center].level),
                )
            )

        results.sort(key=lambda r: (-r.relevance_score, r.document_key))
        return results
