"""Service facade used by the CLI and the web layer."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from refdocs.config import AppConfig
from refdocs.embedding.encoder import EmbeddingProvider, build_embedder
from refdocs.embedding.vectors import VectorEngine
from refdocs.errors import DocumentNotFoundError, InvalidQueryError
from refdocs.fetch.fetcher import Fetcher
from refdocs.index.indexer import Indexer
from refdocs.index.lexical import LexicalIndexer
from refdocs.index.search import Searcher
from refdocs.index.storage import DocumentStore
from refdocs.models import DOC_TYPES, ChunkPage, DocumentView, RefreshReport, SearchQuery, SearchResult
from refdocs.utils.text import compress_text, count_chunks, get_chunk

LOGGER = logging.getLogger(__name__)

MAX_CONTEXT_DEPTH = 3


def normalize_key(key: str) -> str:
    """Document keys are absolute paths on the source, or full URLs."""
    key = key.strip()
    if not key:
        raise InvalidQueryError("Document key must not be empty")
    if key.startswith(("http://", "https://", "/")):
        return key
    return f"/{key}"


class DocsService:
    """Search, chunk and refresh operations over one document store."""

    def __init__(
        self,
        config: AppConfig,
        store: DocumentStore,
        fetcher: Fetcher,
        indexer: Indexer,
        searcher: Searcher,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.fetcher = fetcher
        self.indexer = indexer
        self.searcher = searcher
        # Closed by aclose() only when the service created it.
        self._client = client

    @classmethod
    def from_config(
        cls,
        config: AppConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> "DocsService":
        config = config or AppConfig.from_env()
        db_path = config.resolve_db_path(Path.cwd())
        db_path.parent.mkdir(parents=True, exist_ok=True)

        provider = embedder or build_embedder(
            config.embedding_backend, model_name=config.model_name, dimension=config.dimension
        )
        store = DocumentStore(db_path, dimension=provider.dimension)
        vectors = VectorEngine(provider, store)
        indexer = Indexer(
            store,
            LexicalIndexer(store, config.scoring),
            vectors,
            batch_size=config.index_batch_size,
            vector_batch_size=config.vector_batch_size,
        )

        owned_client = None
        if client is None:
            client = owned_client = httpx.AsyncClient(timeout=config.http_timeout, follow_redirects=True)
        fetcher = Fetcher(
            store,
            client,
            base_url=config.base_url,
            persist=indexer.index_document,
            package_for=config.package_for,
        )
        searcher = Searcher(
            store,
            vectors,
            strategy=config.search_strategy,
            scoring=config.scoring,
            min_similarity=config.vector_min_similarity,
        )
        LOGGER.debug("Service ready (db=%s, strategy=%s)", db_path, config.search_strategy)
        return cls(config, store, fetcher, indexer, searcher, owned_client)

    async def __aenter__(self) -> "DocsService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self.store.close()

    async def search(
        self,
        query: str,
        doc_type: str = "all",
        context_depth: int = 1,
        include_hierarchy: bool = True,
        package_filter: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Rank cached documents for ``query``."""
        text = query.strip()
        if not text:
            raise InvalidQueryError("Empty query")
        if doc_type != "all" and doc_type not in DOC_TYPES:
            raise InvalidQueryError(f"Unknown doc_type {doc_type!r}; expected 'all' or one of {', '.join(DOC_TYPES)}")
        if not 0 <= context_depth <= MAX_CONTEXT_DEPTH:
            raise InvalidQueryError(f"context_depth must be between 0 and {MAX_CONTEXT_DEPTH}")
        if limit is not None and limit < 1:
            raise InvalidQueryError("limit must be at least 1")

        search_query = SearchQuery(
            text=text,
            doc_type=doc_type,
            context_depth=context_depth,
            include_hierarchy=include_hierarchy,
            package_filter=package_filter or None,
            limit=limit or 10,
        )
        return await asyncio.to_thread(self.searcher.search, search_query)

    async def _content(self, key: str) -> str:
        document = await asyncio.to_thread(self.store.get, key)
        if document is not None:
            return document.content
        return await self.fetcher.fetch(key)

    async def get_chunk(
        self, document_key: str, chunk_number: int, chunk_size: Optional[int] = None
    ) -> ChunkPage:
        """Return one 1-based chunk of a document, fetching it if not cached yet."""
        if chunk_size is not None and chunk_size < 1:
            raise InvalidQueryError("chunk_size must be at least 1")
        key = normalize_key(document_key)
        content = await self._content(key)
        page = get_chunk(content, self.config.chunk_size if chunk_size is None else chunk_size, chunk_number)
        page.document_key = key
        return page

    async def get_document(self, document_key: str, compressed: bool = False) -> DocumentView:
        """Return the freshness-checked content of a document, optionally compressed."""
        key = normalize_key(document_key)
        content = await self.fetcher.fetch(key)
        document = await asyncio.to_thread(self.store.get, key)

        metadata: Dict[str, Any] = {
            "size": len(content),
            "total_chunks": count_chunks(content, self.config.chunk_size),
        }
        if document is not None:
            metadata.update(
                package=document.package,
                doc_type=document.doc_type,
                last_modified=document.last_modified,
                last_checked=document.last_checked,
                etag=document.etag,
            )
        if not compressed:
            return DocumentView(key=key, text=content, metadata=metadata)

        result = compress_text(content, token_budget=self.config.token_budget)
        metadata.update(
            original_size=result.original_size,
            compressed_size=result.compressed_size,
            compression_ratio=result.compression_ratio,
            estimated_tokens=result.estimated_tokens,
            over_budget=result.over_budget,
        )
        return DocumentView(key=key, text=result.text, compressed=True, metadata=metadata)

    async def refresh(self, keys: Optional[Sequence[str]] = None) -> RefreshReport:
        """Refresh ``keys`` (default: every configured source) and re-index changes."""
        if keys:
            targets = list(dict.fromkeys(normalize_key(key) for key in keys))
        else:
            targets = [source.key for source in self.config.sources]
        return await self.indexer.refresh(self.fetcher, targets)

    async def reindex(self) -> RefreshReport:
        return await asyncio.to_thread(self.indexer.reindex)

    async def remove(self, document_key: str) -> None:
        key = normalize_key(document_key)
        if not await asyncio.to_thread(self.store.delete, key):
            raise DocumentNotFoundError(key)

    async def list_documents(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.store.list_documents)

    async def stats(self) -> Dict[str, int]:
        return await asyncio.to_thread(self.store.get_stats)
