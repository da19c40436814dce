"""
URL fetch cache for Event Import Pipeline

Caches GET responses for externally hosted import sources and revalidates
them with conditional requests (ETag / Last-Modified) once they go stale.
"""

import base64
import hashlib
import re
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from ..core.config import UrlFetchCacheConfig
from ..core.exceptions import FetchError, FetchTimeoutError, FileTooLargeError
from ..storage.base import BaseCacheStorage, Clock
from ..storage.file_system_storage import FileSystemCacheStorage
from ..utils.logger import get_logger, set_log_context
from .cache import Cache

CACHE_KEY_PREFIX = "http:"
DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass
class CachedResponse:
    """A fully buffered HTTP response, as served from or stored in the cache."""
    data: bytes
    headers: Dict[str, str]
    status: int
    status_text: str = ""
    url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def cache_status(self) -> Optional[str]:
        return self.header("X-Cache")

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def with_cache_status(self, status: str, http_status: Optional[int] = None) -> 'CachedResponse':
        headers = {k: v for k, v in self.headers.items() if k.lower() != "x-cache"}
        headers["X-Cache"] = status
        return CachedResponse(
            data=self.data,
            headers=headers,
            status=http_status if http_status is not None else self.status,
            status_text=self.status_text,
            url=self.url,
            metadata=dict(self.metadata),
        )

    def to_cache_value(self) -> Dict[str, Any]:
        return {
            "data": base64.b64encode(self.data).decode("ascii"),
            "headers": self.headers,
            "status": self.status,
            "statusText": self.status_text,
            "url": self.url,
            "metadata": self.metadata,
        }

    @classmethod
    def from_cache_value(cls, value: Dict[str, Any]) -> 'CachedResponse':
        return cls(
            data=base64.b64decode(value["data"]),
            headers=dict(value.get("headers") or {}),
            status=int(value.get("status", 200)),
            status_text=value.get("statusText") or "",
            url=value.get("url") or "",
            metadata=dict(value.get("metadata") or {}),
        )


def normalize_url(url: str) -> str:
    """
    Canonical form used for cache keys.

    Lower-cases scheme and host, drops default ports, the fragment and any
    trailing slash (except for the root path) and sorts query parameters.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"

    netloc = host
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{host}"
    if parts.port is not None and DEFAULT_PORTS.get(scheme) != parts.port:
        netloc += f":{parts.port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def parse_cache_control(value: Optional[str]) -> Dict[str, Optional[str]]:
    directives: Dict[str, Optional[str]] = {}
    if not value:
        return directives
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, _, arg = part.partition("=")
        directives[name.strip().lower()] = arg.strip().strip('"') if arg else None
    return directives


class UrlFetchCache:
    """
    HTTP-aware cache in front of outbound GET requests.

    Responses carry an ``X-Cache`` header: HIT, MISS, REVALIDATED, STALE or
    BYPASS.
    """

    def __init__(
        self,
        config: Optional[UrlFetchCacheConfig] = None,
        storage: Optional[BaseCacheStorage] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or UrlFetchCacheConfig()
        self.storage = storage or FileSystemCacheStorage(
            cache_dir=self.config.cache_dir,
            max_size=self.config.max_size,
            default_ttl=self.config.default_ttl,
            clock=clock,
        )
        self.cache = Cache(
            self.storage,
            key_prefix=CACHE_KEY_PREFIX,
            default_ttl=self.config.default_ttl,
            max_ttl=self.config.max_ttl,
            name="url-fetch",
        )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self._clock = clock or self.storage._clock

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="url_fetch_cache")

    async def __aenter__(self) -> 'UrlFetchCache':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()
        await self.storage.destroy()

    # Keys and freshness

    def get_cache_key(self, url: str, method: str = "GET", user_id: Optional[str] = None) -> str:
        key = f"{method.upper()}:{normalize_url(url)}"
        return f"{key}:user:{user_id}" if user_id else f"{key}:anonymous"

    def calculate_ttl(self, headers: Dict[str, str]) -> int:
        """
        Derive a TTL in seconds from response headers.

        0 means the response must not be cached. The configured maximum TTL
        always applies.
        """
        max_ttl = self.config.max_ttl
        default_ttl = min(self.config.default_ttl, max_ttl)
        if not self.config.respect_cache_control:
            return default_ttl

        lowered = {k.lower(): v for k, v in headers.items()}
        directives = parse_cache_control(lowered.get("cache-control"))

        if "no-store" in directives or "no-cache" in directives:
            return 0

        max_age = directives.get("max-age")
        if max_age is not None:
            try:
                return min(max(int(max_age), 0), max_ttl)
            except ValueError:
                pass

        expires = lowered.get("expires")
        if expires:
            try:
                seconds = parsedate_to_datetime(expires).timestamp() - self._clock()
            except (TypeError, ValueError):
                seconds = 0
            if seconds > 0:
                return min(int(seconds), max_ttl)

        return default_ttl

    def is_cacheable(self, response: CachedResponse) -> bool:
        if not response.ok:
            return False
        directives = parse_cache_control(response.header("cache-control"))
        return "no-store" not in directives and "private" not in directives

    def is_stale(self, cached: CachedResponse) -> bool:
        if not self.config.respect_cache_control:
            return False

        now = self._clock()
        meta = cached.metadata
        fetched_at = meta.get("fetchedAt") or 0
        if meta.get("expires") is not None and meta["expires"] < now:
            return True
        if meta.get("maxAge") is not None and now - fetched_at > meta["maxAge"]:
            return True
        if meta.get("freshUntil") is not None and meta["freshUntil"] < now:
            return True
        return False

    # Fetching

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
        bypass_cache: bool = False,
        force_revalidate: bool = False,
        timeout: Optional[float] = None,
        max_size: Optional[int] = None,
    ) -> CachedResponse:
        """
        Fetch ``url`` through the cache.

        Args:
            url: Absolute URL
            method: HTTP method; anything but GET bypasses the cache
            headers: Extra request headers
            user_id: Scope cached entries to one user
            bypass_cache: Always fetch, never read or write the cache
            force_revalidate: Revalidate even a fresh entry
            timeout: Request timeout in seconds
            max_size: Abort the download once a successful body exceeds this many bytes

        Returns:
            CachedResponse annotated with ``X-Cache``

        Raises:
            FetchError: On network failure with no cached fallback
            FileTooLargeError: When the body exceeds ``max_size``
        """
        method = method.upper()
        headers = dict(headers or {})

        if method != "GET" or bypass_cache:
            response = await self._fetch_fresh(url, method, headers, timeout, max_size)
            return response.with_cache_status("BYPASS")

        key = self.get_cache_key(url, method, user_id)
        cached_value = await self.cache.get(key)
        cached = CachedResponse.from_cache_value(cached_value) if cached_value else None

        if cached is not None and not force_revalidate and not self.is_stale(cached):
            self.logger.debug("URL cache hit", extra={"url": url})
            return cached.with_cache_status("HIT")

        if cached is not None and (cached.metadata.get("etag") or cached.metadata.get("lastModified")):
            return await self._revalidate(url, key, cached, headers, timeout, max_size)

        try:
            return await self._fetch_and_cache(url, key, headers, timeout, max_size)
        except FileTooLargeError:
            raise
        except FetchError:
            if cached is None:
                raise
            self.logger.warning("Fetch failed, serving stale cache entry", extra={"url": url}, exc_info=True)
            return cached.with_cache_status("STALE")

    async def _revalidate(self, url: str, key: str, cached: CachedResponse,
                          headers: Dict[str, str], timeout: Optional[float],
                          max_size: Optional[int] = None) -> CachedResponse:
        conditional = dict(headers)
        if cached.metadata.get("etag"):
            conditional["If-None-Match"] = cached.metadata["etag"]
        if cached.metadata.get("lastModified"):
            conditional["If-Modified-Since"] = cached.metadata["lastModified"]

        try:
            response = await self._request(url, "GET", conditional, timeout, max_size)
        except FileTooLargeError:
            raise
        except FetchError:
            self.logger.warning("Revalidation failed, serving stale cache entry", extra={"url": url}, exc_info=True)
            return cached.with_cache_status("STALE")

        if response.status == 304:
            refreshed = cached.with_cache_status("REVALIDATED", http_status=200)
            response_headers = {**cached.headers, **response.headers}
            ttl = self.calculate_ttl(response_headers)
            refreshed.metadata.update(self._freshness_metadata(response_headers, ttl))
            refreshed.headers.pop("X-Cache", None)
            await self._store(key, refreshed, ttl)
            self.logger.debug("URL cache revalidated", extra={"url": url})
            return refreshed.with_cache_status("REVALIDATED", http_status=200)

        return await self._cache_response(key, response)

    async def _fetch_and_cache(self, url: str, key: str, headers: Dict[str, str],
                               timeout: Optional[float], max_size: Optional[int] = None) -> CachedResponse:
        response = await self._fetch_fresh(url, "GET", headers, timeout, max_size)
        return await self._cache_response(key, response)

    async def _cache_response(self, key: str, response: CachedResponse) -> CachedResponse:
        if self.is_cacheable(response):
            ttl = self.calculate_ttl(response.headers)
            if ttl > 0:
                response.metadata = {
                    **self._freshness_metadata(response.headers, ttl),
                    "etag": response.header("etag"),
                    "lastModified": response.header("last-modified"),
                    "contentHash": hashlib.sha256(response.data).hexdigest(),
                }
                await self._store(key, response, ttl)
        return response.with_cache_status("MISS")

    def _freshness_metadata(self, headers: Dict[str, str], ttl: int) -> Dict[str, Any]:
        now = self._clock()
        lowered = {k.lower(): v for k, v in headers.items()}
        max_age = parse_cache_control(lowered.get("cache-control")).get("max-age")
        expires = None
        if lowered.get("expires"):
            try:
                expires = parsedate_to_datetime(lowered["expires"]).timestamp()
            except (TypeError, ValueError):
                expires = None
        return {
            "fetchedAt": now,
            "freshUntil": now + ttl,
            "maxAge": min(int(max_age), self.config.max_ttl) if max_age and max_age.isdigit() else None,
            "expires": expires,
        }

    async def _store(self, key: str, response: CachedResponse, ttl: int):
        storage_ttl = ttl
        # Keep revalidatable entries around past freshness so 304s can refresh them
        if self.config.respect_cache_control and (response.metadata.get("etag") or response.metadata.get("lastModified")):
            storage_ttl = self.config.max_ttl
        await self.cache.set(key, response.to_cache_value(), ttl=storage_ttl)

    async def _fetch_fresh(self, url: str, method: str, headers: Dict[str, str],
                           timeout: Optional[float], max_size: Optional[int] = None) -> CachedResponse:
        return await self._request(url, method, headers, timeout, max_size)

    async def _request(self, url: str, method: str, headers: Dict[str, str],
                       timeout: Optional[float], max_size: Optional[int] = None) -> CachedResponse:
        request_options: Dict[str, Any] = {"headers": headers}
        if timeout is not None:
            request_options["timeout"] = timeout
        try:
            async with self.client.stream(method, url, **request_options) as response:
                data = await self._read_body(response, url, max_size)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(int((timeout or 0) * 1000), url=url) from e
        except httpx.RequestError as e:
            raise FetchError(f"{type(e).__name__}: {e}", url=url) from e

        return CachedResponse(
            data=data,
            headers=dict(response.headers),
            status=response.status_code,
            status_text=response.reason_phrase,
            url=str(response.url),
        )

    async def _read_body(self, response: httpx.Response, url: str, max_size: Optional[int]) -> bytes:
        """Read a streamed body, stopping as soon as it exceeds ``max_size``."""
        if max_size is None or not response.is_success:
            return await response.aread()

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_size:
            raise FileTooLargeError(int(declared), max_size, url=url)

        chunks = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > max_size:
                raise FileTooLargeError(received, max_size, url=url)
            chunks.append(chunk)
        return b"".join(chunks)

    # Maintenance

    async def invalidate_for_user(self, user_id: str) -> int:
        return await self.cache.clear(f":user:{re.escape(str(user_id))}$")

    async def invalidate_url(self, url: str, user_id: Optional[str] = None) -> bool:
        return await self.cache.delete(self.get_cache_key(url, "GET", user_id))

    async def clear(self) -> int:
        return await self.cache.clear()

    async def cleanup(self) -> int:
        return await self.cache.cleanup()

    async def get_stats(self) -> Dict[str, Any]:
        return (await self.cache.get_stats()).to_dict()
