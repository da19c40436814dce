"""Tests for the HTTP-aware URL fetch cache."""

from email.utils import formatdate

import httpx
import pytest
import pytest_asyncio

from event_import_pipeline.core.config import UrlFetchCacheConfig
from event_import_pipeline.core.exceptions import FetchError, FetchTimeoutError, FileTooLargeError
from event_import_pipeline.services.url_fetch_cache import UrlFetchCache, normalize_url, parse_cache_control
from event_import_pipeline.storage.memory_storage import MemoryCacheStorage

URL = "https://data.example.com/exports/incidents.csv"


class Origin:
    """Scripted HTTP origin for httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.body = b"id,name\n1,alpha\n"
        self.headers = {"content-type": "text/csv"}
        self.status = 200
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with(request)
        etag = self.headers.get("etag")
        if etag and request.headers.get("if-none-match") == etag:
            return httpx.Response(304, headers={"etag": etag, "cache-control": self.headers.get("cache-control", "")})
        return httpx.Response(self.status, content=self.body, headers=self.headers)


@pytest.fixture
def origin():
    return Origin()


@pytest_asyncio.fixture
async def url_cache(origin, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(origin))
    cache = UrlFetchCache(
        UrlFetchCacheConfig(default_ttl=300, max_ttl=3600),
        storage=MemoryCacheStorage(clock=clock),
        client=client,
        clock=clock,
    )
    yield cache
    await cache.aclose()
    await client.aclose()


@pytest.mark.asyncio
async def test_miss_then_hit(url_cache, origin):
    first = await url_cache.fetch(URL)
    second = await url_cache.fetch(URL)

    assert first.cache_status == "MISS"
    assert second.cache_status == "HIT"
    assert second.data == origin.body
    assert len(origin.requests) == 1


@pytest.mark.asyncio
async def test_equivalent_urls_share_an_entry(url_cache, origin):
    await url_cache.fetch("https://DATA.example.com:443/exports/incidents.csv?b=2&a=1#top")
    hit = await url_cache.fetch("https://data.example.com/exports/incidents.csv?a=1&b=2")

    assert hit.cache_status == "HIT"
    assert len(origin.requests) == 1


@pytest.mark.asyncio
async def test_no_store_responses_are_not_cached(url_cache, origin):
    origin.headers["cache-control"] = "no-store"

    await url_cache.fetch(URL)
    second = await url_cache.fetch(URL)

    assert second.cache_status == "MISS"
    assert len(origin.requests) == 2


@pytest.mark.asyncio
async def test_zero_ttl_responses_are_not_stored_even_with_validators(url_cache, origin):
    origin.headers.update({"etag": '"v1"', "cache-control": "no-cache"})

    await url_cache.fetch(URL)
    second = await url_cache.fetch(URL)

    assert second.cache_status == "MISS"
    assert "if-none-match" not in origin.requests[1].headers
    assert await url_cache.cache.keys() == []


@pytest.mark.asyncio
async def test_private_and_error_responses_are_not_cached(url_cache, origin):
    origin.headers["cache-control"] = "private, max-age=60"
    await url_cache.fetch(URL)
    assert (await url_cache.fetch(URL)).cache_status == "MISS"

    origin.headers = {"content-type": "text/csv"}
    origin.status = 500
    other = URL + "?v=2"
    failed = await url_cache.fetch(other)
    assert failed.status == 500
    assert not failed.ok
    assert (await url_cache.fetch(other)).cache_status == "MISS"


@pytest.mark.asyncio
async def test_stale_entry_is_revalidated_with_etag(url_cache, origin, clock):
    origin.headers.update({"etag": '"v1"', "cache-control": "max-age=60"})
    await url_cache.fetch(URL)

    clock.advance(61)
    revalidated = await url_cache.fetch(URL)

    assert revalidated.cache_status == "REVALIDATED"
    assert revalidated.status == 200
    assert revalidated.data == origin.body
    assert origin.requests[-1].headers["if-none-match"] == '"v1"'

    # Freshness was renewed by the 304
    assert (await url_cache.fetch(URL)).cache_status == "HIT"
    assert len(origin.requests) == 2


@pytest.mark.asyncio
async def test_changed_resource_replaces_stale_entry(url_cache, origin, clock):
    origin.headers.update({"etag": '"v1"', "cache-control": "max-age=60"})
    await url_cache.fetch(URL)

    clock.advance(61)
    origin.headers["etag"] = '"v2"'
    origin.body = b"id,name\n1,beta\n"
    fresh = await url_cache.fetch(URL)

    assert fresh.cache_status == "MISS"
    assert fresh.data == b"id,name\n1,beta\n"
    assert (await url_cache.fetch(URL)).data == b"id,name\n1,beta\n"


@pytest.mark.asyncio
async def test_force_revalidate_skips_fresh_hit(url_cache, origin):
    origin.headers.update({"etag": '"v1"', "cache-control": "max-age=600"})
    await url_cache.fetch(URL)

    response = await url_cache.fetch(URL, force_revalidate=True)

    assert response.cache_status == "REVALIDATED"
    assert len(origin.requests) == 2


@pytest.mark.asyncio
async def test_network_failure_serves_stale_entry(url_cache, origin, clock):
    origin.headers.update({"etag": '"v1"', "cache-control": "max-age=60"})
    await url_cache.fetch(URL)

    clock.advance(61)
    origin.fail_with = lambda request: httpx.ConnectError("connection refused", request=request)
    response = await url_cache.fetch(URL)

    assert response.cache_status == "STALE"
    assert response.data == b"id,name\n1,alpha\n"


@pytest.mark.asyncio
async def test_oversized_refresh_does_not_fall_back_to_stale_entry(url_cache, origin, clock):
    origin.headers.update({"etag": '"v1"', "cache-control": "max-age=60"})
    await url_cache.fetch(URL, max_size=100)

    clock.advance(61)
    origin.headers["etag"] = '"v2"'
    origin.body = b"id,name\n" + b"2,beta\n" * 50

    with pytest.raises(FileTooLargeError):
        await url_cache.fetch(URL, max_size=100)
    assert (await url_cache.fetch(URL)).data == origin.body


@pytest.mark.asyncio
async def test_network_failure_without_cache_raises(url_cache, origin):
    origin.fail_with = lambda request: httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchError) as exc_info:
        await url_cache.fetch(URL)
    assert "ConnectError" in exc_info.value.message
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_timeout_raises_fetch_timeout_error(url_cache, origin):
    origin.fail_with = lambda request: httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(FetchTimeoutError) as exc_info:
        await url_cache.fetch(URL, timeout=5)
    assert exc_info.value.message == "Request timeout after 5000ms"


@pytest.mark.asyncio
async def test_non_get_and_bypass_are_not_cached(url_cache, origin):
    posted = await url_cache.fetch(URL, method="POST")
    bypassed = await url_cache.fetch(URL, bypass_cache=True)
    after = await url_cache.fetch(URL)

    assert posted.cache_status == "BYPASS"
    assert bypassed.cache_status == "BYPASS"
    assert after.cache_status == "MISS"
    assert len(origin.requests) == 3


@pytest.mark.asyncio
async def test_user_scoped_entries(url_cache, origin):
    await url_cache.fetch(URL, user_id="7")
    await url_cache.fetch(URL, user_id="8")
    await url_cache.fetch(URL)

    assert url_cache.get_cache_key(URL, user_id="7").endswith(":user:7")
    assert url_cache.get_cache_key(URL).endswith(":anonymous")

    assert await url_cache.invalidate_for_user("7") == 1
    assert (await url_cache.fetch(URL, user_id="8")).cache_status == "HIT"
    assert (await url_cache.fetch(URL, user_id="7")).cache_status == "MISS"


@pytest.mark.asyncio
async def test_invalidate_url_and_stats(url_cache):
    await url_cache.fetch(URL)
    await url_cache.fetch(URL)

    stats = await url_cache.get_stats()
    assert stats["entries"] == 1
    assert stats["hits"] >= 1

    assert await url_cache.invalidate_url(URL)
    assert (await url_cache.fetch(URL)).cache_status == "MISS"


@pytest.mark.asyncio
async def test_cached_entry_records_content_hash(url_cache, origin):
    origin.headers["etag"] = '"abc"'
    response = await url_cache.fetch(URL)

    assert response.metadata["etag"] == '"abc"'
    assert len(response.metadata["contentHash"]) == 64
    assert response.metadata["freshUntil"] == response.metadata["fetchedAt"] + 300


def test_normalize_url():
    assert normalize_url("HTTP://Example.COM:80/a/b/?z=1&a=2#frag") == "http://example.com/a/b?a=2&z=1"
    assert normalize_url("https://example.com") == "https://example.com/"
    assert normalize_url("https://example.com:8443/") == "https://example.com:8443/"


def test_parse_cache_control():
    assert parse_cache_control('public, max-age=120, no-transform') == {
        "public": None,
        "max-age": "120",
        "no-transform": None,
    }
    assert parse_cache_control(None) == {}


def test_calculate_ttl(clock):
    cache = UrlFetchCache(
        UrlFetchCacheConfig(default_ttl=300, max_ttl=3600),
        storage=MemoryCacheStorage(clock=clock),
        client=httpx.AsyncClient(transport=httpx.MockTransport(Origin())),
        clock=clock,
    )

    assert cache.calculate_ttl({}) == 300
    assert cache.calculate_ttl({"Cache-Control": "max-age=60"}) == 60
    assert cache.calculate_ttl({"Cache-Control": "max-age=999999"}) == 3600
    assert cache.calculate_ttl({"Cache-Control": "no-cache"}) == 0
    assert cache.calculate_ttl({"Cache-Control": "no-store"}) == 0
    assert cache.calculate_ttl({"Expires": formatdate(clock() + 120, usegmt=True)}) == 120
    assert cache.calculate_ttl({"Expires": formatdate(clock() - 120, usegmt=True)}) == 300

    cache.config = UrlFetchCacheConfig(default_ttl=300, max_ttl=3600, respect_cache_control=False)
    assert cache.calculate_ttl({"Cache-Control": "no-store"}) == 300
