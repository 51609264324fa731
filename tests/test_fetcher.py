"""Tests for the freshness-checked Fetcher."""

from __future__ import annotations

import asyncio
from typing import Dict, List
from unittest.mock import patch

import httpx
import pytest

from refdocs.errors import CacheInconsistencyError, FetchError
from refdocs.fetch.fetcher import Fetcher, is_fresh
from refdocs.index.storage import DocumentStore
from refdocs.models import CachedDocument

BASE_URL = "https://docs.test"


class FakeSource:
    """In-memory HTTP source that records every request."""

    def __init__(self, content: str = "# Doc\n\nbody", etag: str | None = '"abc123"') -> None:
        self.content = content
        self.etag = etag
        self.last_modified: str | None = "Mon, 01 Jan 2024 00:00:00 GMT"
        self.fail = False
        self.head_status = 200
        self.delay = 0.0
        self.requests: List[str] = []

    def headers(self) -> Dict[str, str]:
        headers = {}
        if self.etag:
            headers["etag"] = self.etag
        if self.last_modified:
            headers["last-modified"] = self.last_modified
        return headers

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.method)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "HEAD":
            return httpx.Response(self.head_status, headers=self.headers())
        return httpx.Response(200, text=self.content, headers=self.headers())

    @property
    def gets(self) -> int:
        return self.requests.count("GET")


def make_cached(content: str = "cached body", etag: str | None = '"abc123"') -> CachedDocument:
    return CachedDocument(
        key="/doc.txt",
        content=content,
        last_modified="Mon, 01 Jan 2024 00:00:00 GMT",
        last_checked="2024-01-01T00:00:00+00:00",
        etag=etag,
    )


@pytest.fixture
def store(tmp_path):
    store = DocumentStore(tmp_path / "fetch.db", dimension=4)
    yield store
    store.close()


@pytest.fixture
def source():
    return FakeSource()


def make_fetcher(store: DocumentStore, source: FakeSource, **kwargs) -> Fetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(source))
    return Fetcher(store, client, base_url=BASE_URL, **kwargs)


class TestIsFresh:
    """Tests for the freshness rule."""

    def test_no_validators_means_fresh(self) -> None:
        assert is_fresh(make_cached(), None, None)

    def test_matching_etag(self) -> None:
        assert is_fresh(make_cached(), '"abc123"', "Tue, 02 Jan 2024 00:00:00 GMT")

    def test_matching_last_modified(self) -> None:
        assert is_fresh(make_cached(etag=None), '"other"', "Mon, 01 Jan 2024 00:00:00 GMT")

    def test_stale(self) -> None:
        assert not is_fresh(make_cached(), '"other"', "Tue, 02 Jan 2024 00:00:00 GMT")


class TestFetch:
    """Tests for Fetcher.fetch."""

    def test_url_for(self, store, source) -> None:
        fetcher = make_fetcher(store, source)
        assert fetcher.url_for("/docs/kit/llms.txt") == "https://docs.test/docs/kit/llms.txt"
        assert fetcher.url_for("https://other.test/x") == "https://other.test/x"

    @pytest.mark.asyncio
    async def test_cold_cache_retrieves_and_stores(self, store, source) -> None:
        fetcher = make_fetcher(store, source)

        content = await fetcher.fetch("/doc.txt")

        assert content == source.content
        stored = store.get("/doc.txt")
        assert stored.content == source.content
        assert stored.etag == '"abc123"'
        assert stored.last_modified == "Mon, 01 Jan 2024 00:00:00 GMT"
        assert source.requests == ["GET"]

    @pytest.mark.asyncio
    async def test_matching_etag_skips_retrieval(self, store, source) -> None:
        """A cached entry whose etag matches the probe is served without a GET."""
        store.put(make_cached(content="cached body"))
        fetcher = make_fetcher(store, source)

        content = await fetcher.fetch("/doc.txt")

        assert content == "cached body"
        assert source.requests == ["HEAD"]

    @pytest.mark.asyncio
    async def test_second_fetch_does_not_write_again(self, store, source) -> None:
        writes: List[CachedDocument] = []

        def persist(document: CachedDocument) -> None:
            writes.append(document)
            store.put(document)

        fetcher = make_fetcher(store, source, persist=persist)

        first = await fetcher.fetch("/doc.txt")
        second = await fetcher.fetch("/doc.txt")

        assert first == second
        assert source.gets == 1
        assert len(writes) == 1

    @pytest.mark.asyncio
    async def test_stale_cache_is_replaced(self, store, source) -> None:
        store.put(make_cached(content="old", etag='"old"'))
        source.last_modified = "Tue, 02 Jan 2024 00:00:00 GMT"
        source.content = "new"
        fetcher = make_fetcher(store, source)

        content = await fetcher.fetch("/doc.txt")

        assert content == "new"
        assert source.requests == ["HEAD", "GET"]
        stored = store.get("/doc.txt")
        assert stored.content == "new"
        assert stored.etag == '"abc123"'

    @pytest.mark.asyncio
    async def test_missing_validators_treated_as_fresh(self, store, source) -> None:
        store.put(make_cached(content="cached"))
        source.etag = None
        source.last_modified = None
        fetcher = make_fetcher(store, source)

        assert await fetcher.fetch("/doc.txt") == "cached"
        assert source.gets == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_cache_on_network_error(self, store, source) -> None:
        store.put(make_cached(content="cached"))
        source.fail = True
        fetcher = make_fetcher(store, source)

        assert await fetcher.fetch("/doc.txt") == "cached"

    @pytest.mark.asyncio
    async def test_falls_back_to_cache_on_error_status(self, store, source) -> None:
        store.put(make_cached(content="cached"))
        source.head_status = 503
        fetcher = make_fetcher(store, source)

        outcome = await fetcher.retrieve("/doc.txt")

        assert outcome.status == "fallback"
        assert outcome.document.content == "cached"

    @pytest.mark.asyncio
    async def test_no_cache_and_failure_raises(self, store, source) -> None:
        source.fail = True
        fetcher = make_fetcher(store, source)

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch("/doc.txt")

        assert exc_info.value.retryable is True
        assert store.get("/doc.txt") is None

    @pytest.mark.asyncio
    async def test_missing_last_modified_gets_timestamp(self, store, source) -> None:
        source.last_modified = None
        fetcher = make_fetcher(store, source)

        await fetcher.fetch("/doc.txt")

        assert store.get("/doc.txt").last_modified.endswith("GMT")

    @pytest.mark.asyncio
    async def test_package_for(self, store, source) -> None:
        fetcher = make_fetcher(store, source, package_for=lambda key: "kit")

        await fetcher.fetch("/doc.txt")

        assert store.get("/doc.txt").package == "kit"

    @pytest.mark.asyncio
    async def test_cache_entry_vanishing_is_an_error(self, store, source) -> None:
        cached = make_cached()
        fetcher = make_fetcher(store, source)

        with patch.object(store, "get", side_effect=[cached, None]):
            with pytest.raises(CacheInconsistencyError):
                await fetcher.fetch("/doc.txt")


class TestRetrieve:
    """Tests for Fetcher.retrieve."""

    @pytest.mark.asyncio
    async def test_retrieve_does_not_persist(self, store, source) -> None:
        fetcher = make_fetcher(store, source)

        outcome = await fetcher.retrieve("/doc.txt")

        assert outcome.retrieved
        assert outcome.document.content == source.content
        assert store.get("/doc.txt") is None

    @pytest.mark.asyncio
    async def test_retrieve_fresh_reports_cached(self, store, source) -> None:
        store.put(make_cached())
        fetcher = make_fetcher(store, source)

        outcome = await fetcher.retrieve("/doc.txt")

        assert outcome.status == "cached"


class TestDeduplication:
    """Concurrent requests for one key share a single retrieval."""

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_get(self, store, source) -> None:
        source.delay = 0.05
        fetcher = make_fetcher(store, source)

        results = await asyncio.gather(*(fetcher.fetch("/doc.txt") for _ in range(5)))

        assert results == [source.content] * 5
        assert source.gets == 1

    @pytest.mark.asyncio
    async def test_in_flight_map_is_cleared(self, store, source) -> None:
        fetcher = make_fetcher(store, source)

        await fetcher.fetch("/doc.txt")

        assert fetcher._in_flight == {}
        assert fetcher._persisting == {}

    @pytest.mark.asyncio
    async def test_different_keys_are_not_merged(self, store, source) -> None:
        source.delay = 0.01
        fetcher = make_fetcher(store, source)

        await asyncio.gather(fetcher.fetch("/a.txt"), fetcher.fetch("/b.txt"))

        assert source.gets == 2

    @pytest.mark.asyncio
    async def test_fetch_and_retrieve_share_one_get(self, store, source) -> None:
        """A refresh and an on-demand read of the same stale key download once."""
        store.put(make_cached(etag='"old"'))
        source.etag = '"new"'
        source.last_modified = "Tue, 02 Jan 2024 00:00:00 GMT"
        source.delay = 0.05
        fetcher = make_fetcher(store, source)

        content, outcome = await asyncio.gather(fetcher.fetch("/doc.txt"), fetcher.retrieve("/doc.txt"))

        assert source.gets == 1
        assert content == source.content
        assert outcome.retrieved
        assert outcome.document.content == source.content
        assert store.get("/doc.txt").etag == '"new"'
