"""
Cache service for Event Import Pipeline

A namespaced cache facade over a pluggable storage backend, and an
injectable manager that owns named cache instances.
"""

import inspect
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..core.config import CacheConfig
from ..models.cache import CacheSetOptions, CacheStats
from ..storage.base import BaseCacheStorage, Clock
from ..storage.file_system_storage import FileSystemCacheStorage
from ..storage.memory_storage import MemoryCacheStorage
from ..utils.logger import get_logger, set_log_context

Factory = Callable[[], Union[Any, Awaitable[Any]]]


class Cache:
    """
    Key/value cache with TTL and tag-based invalidation.

    Every operation except ``get_or_set``'s factory call degrades to a miss
    or no-op when the backend fails: errors are logged and swallowed so the
    cache never becomes a correctness dependency.
    """

    def __init__(
        self,
        storage: BaseCacheStorage,
        key_prefix: str = "",
        default_ttl: Optional[float] = None,
        max_ttl: Optional[float] = None,
        name: str = "default",
    ):
        self.storage = storage
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self.name = name

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="cache")

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _options(self, ttl: Optional[float], tags: Optional[List[str]],
                 metadata: Optional[Dict[str, Any]]) -> CacheSetOptions:
        effective_ttl = ttl or self.default_ttl
        if effective_ttl and self.max_ttl:
            effective_ttl = min(effective_ttl, self.max_ttl)
        return CacheSetOptions(ttl=effective_ttl, tags=list(tags or []), metadata=dict(metadata or {}))

    async def _prefixed_keys(self, pattern: Optional[str]) -> List[str]:
        """Full backend keys under this prefix whose un-prefixed part matches."""
        regex = re.compile(pattern) if pattern is not None else None
        matched = []
        for full_key in await self.storage.keys():
            if not full_key.startswith(self.key_prefix):
                continue
            short_key = full_key[len(self.key_prefix):]
            if regex is None or regex.search(short_key):
                matched.append(full_key)
        return matched

    async def get(self, key: str) -> Any:
        try:
            entry = await self.storage.get(self._full_key(key))
            return entry.value if entry is not None else None
        except Exception:
            self.logger.error("Cache get failed", extra={"cache": self.name, "key": key}, exc_info=True)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None,
                  tags: Optional[List[str]] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key (without namespace prefix)
            value: Value to store
            ttl: Seconds to live; None or 0 uses the default TTL
            tags: Tags used by ``invalidate_by_tags``
            metadata: Custom metadata kept with the entry
        """
        try:
            await self.storage.set(self._full_key(key), value, self._options(ttl, tags, metadata))
        except Exception:
            self.logger.error("Cache set failed", extra={"cache": self.name, "key": key}, exc_info=True)

    async def get_or_set(self, key: str, factory: Factory, ttl: Optional[float] = None,
                         tags: Optional[List[str]] = None,
                         metadata: Optional[Dict[str, Any]] = None) -> Any:
        """
        Return the cached value, computing and storing it on a miss.

        Factory errors propagate and nothing is cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        try:
            value = factory()
            if inspect.isawaitable(value):
                value = await value
        except Exception:
            self.logger.error("Cache factory failed", extra={"cache": self.name, "key": key}, exc_info=True)
            raise

        await self.set(key, value, ttl=ttl, tags=tags, metadata=metadata)
        return value

    async def delete(self, key: str) -> bool:
        try:
            return await self.storage.delete(self._full_key(key))
        except Exception:
            self.logger.error("Cache delete failed", extra={"cache": self.name, "key": key}, exc_info=True)
            return False

    async def has(self, key: str) -> bool:
        try:
            return await self.storage.has(self._full_key(key))
        except Exception:
            self.logger.error("Cache has failed", extra={"cache": self.name, "key": key}, exc_info=True)
            return False

    async def clear(self, pattern: Optional[str] = None) -> int:
        """Remove all entries in this namespace, or those matching ``pattern``."""
        try:
            if pattern is None and not self.key_prefix:
                return await self.storage.clear()
            removed = 0
            for full_key in await self._prefixed_keys(pattern):
                if await self.storage.delete(full_key):
                    removed += 1
            return removed
        except Exception:
            self.logger.error("Cache clear failed", extra={"cache": self.name, "pattern": pattern}, exc_info=True)
            return 0

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        """List un-prefixed keys, optionally filtered by a regular expression."""
        try:
            return [full_key[len(self.key_prefix):] for full_key in await self._prefixed_keys(pattern)]
        except Exception:
            self.logger.error("Cache keys failed", extra={"cache": self.name, "pattern": pattern}, exc_info=True)
            return []

    async def get_many(self, keys: List[str]) -> Dict[str, Any]:
        try:
            entries = await self.storage.get_many([self._full_key(k) for k in keys])
            return {full_key[len(self.key_prefix):]: entry.value for full_key, entry in entries.items()}
        except Exception:
            self.logger.error("Cache get_many failed", extra={"cache": self.name}, exc_info=True)
            return {}

    async def set_many(self, items: Dict[str, Any], ttl: Optional[float] = None,
                       tags: Optional[List[str]] = None) -> None:
        try:
            await self.storage.set_many(
                {self._full_key(k): v for k, v in items.items()},
                self._options(ttl, tags, None)
            )
        except Exception:
            self.logger.error("Cache set_many failed", extra={"cache": self.name}, exc_info=True)

    async def invalidate_by_tags(self, tags: List[str]) -> int:
        """
        Delete every entry in this namespace carrying any of ``tags``.

        Returns:
            Number of entries invalidated
        """
        wanted = set(tags)
        invalidated = 0
        try:
            for full_key in await self._prefixed_keys(None):
                entry_tags = await self.storage.get_tags(full_key)
                if entry_tags and wanted.intersection(entry_tags):
                    if await self.storage.delete(full_key):
                        invalidated += 1
        except Exception:
            self.logger.error("Cache tag invalidation failed", extra={"cache": self.name, "tags": tags}, exc_info=True)
        if invalidated:
            self.logger.debug("Invalidated cache entries by tag", extra={
                "cache": self.name,
                "tags": tags,
                "count": invalidated
            })
        return invalidated

    def namespace(self, ns: str) -> 'Cache':
        """Return a view sharing this backend with an extra ``ns:`` key prefix."""
        return Cache(
            self.storage,
            key_prefix=f"{self.key_prefix}{ns}:",
            default_ttl=self.default_ttl,
            max_ttl=self.max_ttl,
            name=f"{self.name}:{ns}",
        )

    async def get_stats(self) -> CacheStats:
        try:
            return await self.storage.get_stats()
        except Exception:
            self.logger.error("Cache stats failed", extra={"cache": self.name}, exc_info=True)
            return CacheStats()

    async def cleanup(self) -> int:
        try:
            return await self.storage.cleanup()
        except Exception:
            self.logger.error("Cache cleanup failed", extra={"cache": self.name}, exc_info=True)
            return 0

    async def destroy(self) -> None:
        await self.storage.destroy()


def create_storage(config: CacheConfig, clock: Optional[Clock] = None) -> BaseCacheStorage:
    """Build the storage backend selected by ``config.backend``."""
    if config.backend == "filesystem":
        return FileSystemCacheStorage(
            cache_dir=config.cache_dir,
            max_size=config.effective_max_size,
            default_ttl=config.default_ttl,
            clock=clock,
        )
    return MemoryCacheStorage(
        max_entries=config.max_entries,
        max_size=config.effective_max_size,
        default_ttl=config.default_ttl,
        clock=clock,
    )


class CacheManager:
    """
    Owns named cache instances.

    Constructed explicitly and passed to the components that need caches, so
    each pipeline (and each test) gets its own registry.
    """

    def __init__(self, default_config: Optional[CacheConfig] = None, clock: Optional[Clock] = None):
        self.default_config = default_config or CacheConfig()
        self._clock = clock
        self._caches: Dict[str, Cache] = {}

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="cache_manager")

    def create(self, name: str, config: Optional[CacheConfig] = None,
               storage: Optional[BaseCacheStorage] = None) -> Cache:
        """Create (or replace) the cache registered under ``name``."""
        config = config or self.default_config
        storage = storage or create_storage(config, clock=self._clock)
        storage.start_periodic_cleanup(config.cleanup_interval_ms)

        cache = Cache(
            storage,
            key_prefix=config.key_prefix,
            default_ttl=config.default_ttl,
            max_ttl=config.max_ttl,
            name=name,
        )
        self._caches[name] = cache
        self.logger.info("Cache created", extra={"cache": name, "backend": storage.backend_name})
        return cache

    def get_cache(self, name: str = "default", config: Optional[CacheConfig] = None) -> Cache:
        """Return the named cache, creating it on first use."""
        cache = self._caches.get(name)
        if cache is None:
            cache = self.create(name, config)
        return cache

    def has_cache(self, name: str) -> bool:
        return name in self._caches

    def cache_names(self) -> List[str]:
        return list(self._caches)

    async def shutdown(self, name: str) -> bool:
        cache = self._caches.pop(name, None)
        if cache is None:
            return False
        await cache.destroy()
        return True

    async def shutdown_all(self) -> None:
        for name in list(self._caches):
            await self.shutdown(name)

    async def clear_all(self) -> int:
        cleared = 0
        for cache in self._caches.values():
            cleared += await cache.clear()
        return cleared

    async def cleanup_all(self) -> int:
        removed = 0
        for cache in self._caches.values():
            removed += await cache.cleanup()
        return removed

    async def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: (await cache.get_stats()).to_dict() for name, cache in self._caches.items()}
