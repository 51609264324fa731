"""Document indexing pipeline: refresh cycle and batched (re)indexing."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Optional, Sequence, Tuple

from refdocs.embedding.vectors import VectorEngine
from refdocs.errors import FetchError
from refdocs.fetch.fetcher import Fetcher
from refdocs.index.lexical import IndexedDocument, LexicalIndexer
from refdocs.index.storage import DocumentStore
from refdocs.models import CachedDocument, RefreshReport

LOGGER = logging.getLogger(__name__)


class Indexer:
    """Coordinates document persistence, term indexing and embeddings."""

    def __init__(
        self,
        store: DocumentStore,
        lexical: LexicalIndexer,
        vectors: Optional[VectorEngine] = None,
        *,
        batch_size: int = 500,
        vector_batch_size: int = 100,
    ) -> None:
        if batch_size <= 0 or vector_batch_size <= 0:
            raise ValueError("batch sizes must be positive")
        self.store = store
        self.lexical = lexical
        self.vectors = vectors
        self.batch_size = batch_size
        self.vector_batch_size = vector_batch_size

    def _embed(self, prepared: Sequence[IndexedDocument]) -> List[Tuple[str, bytes]]:
        if self.vectors is None or not prepared:
            return []
        matrix = self.vectors.embed_many([item.document.content for item in prepared])
        return [(item.document.key, self.vectors.encode(row)) for item, row in zip(prepared, matrix)]

    def index_document(self, document: CachedDocument) -> IndexedDocument:
        """Write a document with its terms and embedding in one transaction."""
        prepared = self.lexical.prepare(document)
        embeddings = self._embed([prepared])
        with self.store.transaction():
            self.store.put(prepared.document)
            self.store.put_terms(document.key, prepared.terms)
            if embeddings:
                self.store.put_vectors(embeddings)
        LOGGER.info("Indexed %s (%d terms)", document.key, len(prepared.terms))
        return prepared

    def index_documents(
        self, documents: Sequence[CachedDocument], report: RefreshReport | None = None
    ) -> RefreshReport:
        """Index documents in fixed-size batches, one transaction per batch.

        A failing batch is rolled back and the remaining batches are skipped;
        batches committed before it stay in place.
        """
        report = report or RefreshReport(requested=len(documents))
        total = math.ceil(len(documents) / self.batch_size)

        for number, start in enumerate(range(0, len(documents), self.batch_size), start=1):
            batch = documents[start : start + self.batch_size]
            try:
                prepared = [self.lexical.prepare(document) for document in batch]
                embeddings = self._embed(prepared)
                with self.store.transaction():
                    for item in prepared:
                        self.store.put(item.document)
                        self.store.put_terms(item.document.key, item.terms)
                    for offset in range(0, len(embeddings), self.vector_batch_size):
                        self.store.put_vectors(embeddings[offset : offset + self.vector_batch_size])
            except Exception as exc:
                LOGGER.error("Batch %d of %d failed, rolled back: %s", number, total, exc)
                report.failed_batch = number
                report.error = str(exc)
                report.aborted_batches = list(range(number + 1, total + 1))
                break

            report.committed_batches.append(number)
            report.documents_indexed += len(batch)
            LOGGER.info("Processed batch %d of %d", number, total)

        return report

    async def refresh(self, fetcher: Fetcher, keys: Sequence[str]) -> RefreshReport:
        """Fetch ``keys`` concurrently and index every document that changed."""
        report = RefreshReport(requested=len(keys))
        outcomes = await asyncio.gather(*(fetcher.retrieve(key) for key in keys), return_exceptions=True)

        changed: List[CachedDocument] = []
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, FetchError):
                LOGGER.error("Failed to refresh %s: %s", key, outcome.message)
                report.fetch_failures[key] = outcome.message
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            report.record_fetch(outcome.status)
            if outcome.retrieved:
                changed.append(outcome.document)

        if changed:
            await asyncio.to_thread(self.index_documents, changed, report)
        LOGGER.info(
            "Refresh done: %d retrieved, %d unchanged, %d from stale cache, %d failed",
            report.retrieved,
            report.unchanged,
            report.fallback,
            len(report.fetch_failures),
        )
        return report

    def reindex(self) -> RefreshReport:
        """Rebuild terms and embeddings of every cached document."""
        documents = list(self.store.iter_documents())
        LOGGER.info("Re-indexing %d cached documents", len(documents))
        return self.index_documents(documents, RefreshReport(requested=len(documents)))
