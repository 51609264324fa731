"""Freshness-checked retrieval of remote documents."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from refdocs.config import DEFAULT_BASE_URL
from refdocs.errors import CacheInconsistencyError, FetchError
from refdocs.index.storage import DocumentStore
from refdocs.models import CachedDocument, FetchOutcome

LOGGER = logging.getLogger(__name__)


def is_fresh(cached: CachedDocument, etag: Optional[str], last_modified: Optional[str]) -> bool:
    """Decide whether ``cached`` still matches the validators reported by the source."""
    if not etag and not last_modified:
        # Nothing to compare against.
        return True
    if etag and etag == cached.etag:
        return True
    if last_modified and last_modified == cached.last_modified:
        return True
    return False


class Fetcher:
    """Retrieves documents over HTTP, serving the cache while it is fresh.

    Concurrent calls for the same key share one in-flight retrieval, whether
    they come through :meth:`fetch` or :meth:`retrieve`, so N callers asking
    for a stale key cause a single network retrieval. Concurrent fetches also
    share the write that persists it.
    """

    def __init__(
        self,
        store: DocumentStore,
        client: httpx.AsyncClient,
        *,
        base_url: str = DEFAULT_BASE_URL,
        persist: Optional[Callable[[CachedDocument], Any]] = None,
        package_for: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.persist = persist or store.put
        self.package_for = package_for
        self._in_flight: Dict[str, asyncio.Future[Any]] = {}
        self._persisting: Dict[str, asyncio.Future[Any]] = {}

    def url_for(self, key: str) -> str:
        if key.startswith(("http://", "https://")):
            return key
        return f"{self.base_url}/{key.lstrip('/')}"

    async def fetch(self, key: str) -> str:
        """Return the current content of ``key``, persisting any new retrieval."""
        document = await self._shared(self._persisting, key, self._fetch_and_persist)
        return document.content

    async def retrieve(self, key: str) -> FetchOutcome:
        """Like :meth:`fetch` but leaves persistence to the caller."""
        return await self._shared(self._in_flight, key, self._retrieve)

    async def _shared(
        self,
        registry: Dict[str, asyncio.Future[Any]],
        key: str,
        factory: Callable[[str], Awaitable[Any]],
    ) -> Any:
        task = registry.get(key)
        if task is None:
            task = asyncio.ensure_future(factory(key))
            registry[key] = task
            task.add_done_callback(lambda _: registry.pop(key, None))
        else:
            LOGGER.debug("Joining in-flight %s of %s", factory.__name__.lstrip("_"), key)
        return await asyncio.shield(task)

    async def _fetch_and_persist(self, key: str) -> CachedDocument:
        outcome = await self.retrieve(key)
        if outcome.retrieved:
            await asyncio.to_thread(self.persist, outcome.document)
        return outcome.document

    async def _retrieve(self, key: str) -> FetchOutcome:
        cached = await asyncio.to_thread(self.store.get, key)
        if cached is None:
            document = await self._download(key)
            return FetchOutcome(document=document, status="retrieved")

        try:
            fresh = await self._probe(key, cached)
            if not fresh:
                document = await self._download(key, previous=cached)
                return FetchOutcome(document=document, status="retrieved")
        except FetchError as exc:
            LOGGER.warning("Serving cached copy of %s: %s", key, exc)
            return FetchOutcome(document=cached, status="fallback")

        # The entry may have been removed while probing.
        current = await asyncio.to_thread(self.store.get, key)
        if current is None:
            LOGGER.error("Freshness check passed for %s but no cached entry exists", key)
            raise CacheInconsistencyError(key)
        return FetchOutcome(document=current, status="cached")

    async def _probe(self, key: str, cached: CachedDocument) -> bool:
        url = self.url_for(key)
        try:
            response = await self.client.head(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FetchError(key, str(exc)) from exc
        fresh = is_fresh(cached, response.headers.get("etag"), response.headers.get("last-modified"))
        LOGGER.debug("Probe %s: %s", url, "fresh" if fresh else "stale")
        return fresh

    async def _download(self, key: str, previous: Optional[CachedDocument] = None) -> CachedDocument:
        url = self.url_for(key)
        started = datetime.now(timezone.utc)
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FetchError(key, str(exc)) from exc

        now = datetime.now(timezone.utc)
        LOGGER.info(
            "Fetched %s (%d chars) in %dms",
            url,
            len(response.text),
            (now - started).total_seconds() * 1000,
        )
        if self.package_for is not None:
            package = self.package_for(key)
        else:
            package = previous.package if previous else None
        return CachedDocument(
            key=key,
            content=response.text,
            last_modified=response.headers.get("last-modified") or format_datetime(now, usegmt=True),
            last_checked=now.isoformat(timespec="seconds"),
            etag=response.headers.get("etag"),
            package=package,
        )
