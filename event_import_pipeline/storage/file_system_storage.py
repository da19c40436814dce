"""
File-system cache storage.

Each key is stored in ``<cache_dir>/<sha256[:2]>/<sha256>.cache`` and an
``index.json`` sidecar maps keys to ``{file, expires, size, tags}`` together
with the aggregate hit/miss/eviction counters.
"""

import asyncio
import hashlib
import json
import os
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from .base import BaseCacheStorage, Clock
from ..core.exceptions import CacheError
from ..models.cache import CacheEntry, CacheSetOptions, CacheStats
from ..utils.logger import get_logger, set_log_context

INDEX_FILE_NAME = "index.json"
CLEANUP_TARGET_RATIO = 0.8


class FileSystemCacheStorage(BaseCacheStorage):
    """
    Disk-backed cache with an in-memory index persisted as JSON.

    Values must be JSON serializable. ``cleanup()`` purges expired entries
    first, then evicts least recently accessed entries until the total size
    is at or below 80% of ``max_size``.
    """

    def __init__(
        self,
        cache_dir: str,
        max_size: int = 500 * 1024 * 1024,
        default_ttl: float = 3600,
        clock: Optional[Clock] = None,
    ):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self.cache_dir = cache_dir
        self.max_size = max_size
        self.index_path = os.path.join(cache_dir, INDEX_FILE_NAME)

        self._index: Dict[str, Dict[str, Any]] = {}
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}
        self._lock = asyncio.Lock()
        self._initialized = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="file_system_cache_storage")

    # Paths and index

    def _relative_path(self, key: str) -> str:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(digest[:2], f"{digest}.cache")

    def _absolute_path(self, relative: str) -> str:
        return os.path.join(self.cache_dir, relative)

    async def _ensure_initialized(self):
        if self._initialized:
            return
        await aiofiles.os.makedirs(self.cache_dir, exist_ok=True)
        await self._load_index()
        self._initialized = True

    async def _load_index(self):
        if not await aiofiles.os.path.exists(self.index_path):
            return

        try:
            async with aiofiles.open(self.index_path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, ValueError):
            self.logger.warning("Cache index unreadable, starting empty", extra={
                "index_path": self.index_path
            }, exc_info=True)
            return

        pruned = 0
        for key, item in (data.get("index") or {}).items():
            if await aiofiles.os.path.exists(self._absolute_path(item.get("file", ""))):
                self._index[key] = item
            else:
                pruned += 1

        stats = data.get("stats") or {}
        for name in self._stats:
            self._stats[name] = int(stats.get(name, 0))

        self.logger.info("Loaded cache index", extra={
            "entries": len(self._index),
            "pruned": pruned
        })
        if pruned:
            await self._save_index()

    async def _save_index(self):
        payload = json.dumps({
            "index": self._index,
            "stats": self._stats,
            "lastUpdated": self._now(),
        })
        tmp_path = self.index_path + ".tmp"
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        await aiofiles.os.replace(tmp_path, self.index_path)

    async def _remove_entry(self, key: str) -> bool:
        item = self._index.pop(key, None)
        if item is None:
            return False
        try:
            await aiofiles.os.remove(self._absolute_path(item["file"]))
        except FileNotFoundError:
            pass
        return True

    def _total_size(self) -> int:
        return sum(int(item.get("size", 0)) for item in self._index.values())

    def _is_expired(self, item: Dict[str, Any], now: float) -> bool:
        expires = item.get("expires")
        return expires is not None and expires <= now

    # Operations

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            await self._ensure_initialized()
            item = self._index.get(key)
            if item is None:
                self._stats["misses"] += 1
                return None

            now = self._now()
            if self._is_expired(item, now):
                await self._remove_entry(key)
                self._stats["misses"] += 1
                await self._save_index()
                return None

            path = self._absolute_path(item["file"])
            try:
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    entry = CacheEntry.from_dict(json.loads(await f.read()))
            except (OSError, ValueError, KeyError, TypeError):
                self.logger.warning("Corrupted cache entry removed", extra={"key": key, "file": path})
                await self._remove_entry(key)
                self._stats["misses"] += 1
                await self._save_index()
                return None

            entry.access_count += 1
            entry.last_accessed_at = now
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(entry.to_dict()))

            item["lastAccessed"] = now
            self._stats["hits"] += 1
            await self._save_index()
            return entry

    async def set(self, key: str, value: Any, options: Optional[CacheSetOptions] = None) -> None:
        options = options or CacheSetOptions()
        async with self._lock:
            await self._ensure_initialized()
            now = self._now()
            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=self._expiry_for(options),
                last_accessed_at=now,
                tags=list(options.tags),
                metadata=dict(options.metadata),
            )
            try:
                serialized = json.dumps(entry.to_dict())
            except (TypeError, ValueError) as e:
                raise CacheError("set", f"value for {key} is not JSON serializable: {e}") from e
            entry.size = len(serialized.encode("utf-8"))
            serialized = json.dumps(entry.to_dict())

            relative = self._relative_path(key)
            path = self._absolute_path(relative)
            await aiofiles.os.makedirs(os.path.dirname(path), exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(serialized)

            self._index[key] = {
                "file": relative,
                "expires": entry.expires_at,
                "size": entry.size,
                "tags": entry.tags,
                "created": now,
                "lastAccessed": now,
            }

            if self._total_size() > self.max_size:
                await self._cleanup_locked()
            await self._save_index()

    async def delete(self, key: str) -> bool:
        async with self._lock:
            await self._ensure_initialized()
            removed = await self._remove_entry(key)
            if removed:
                await self._save_index()
            return removed

    async def has(self, key: str) -> bool:
        async with self._lock:
            await self._ensure_initialized()
            item = self._index.get(key)
            return item is not None and not self._is_expired(item, self._now())

    async def clear(self, pattern: Optional[str] = None) -> int:
        async with self._lock:
            await self._ensure_initialized()
            matching = [key for key in list(self._index) if self._matches(key, pattern)]
            for key in matching:
                await self._remove_entry(key)
            await self._save_index()
            return len(matching)

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        async with self._lock:
            await self._ensure_initialized()
            now = self._now()
            return [
                key for key, item in self._index.items()
                if not self._is_expired(item, now) and self._matches(key, pattern)
            ]

    async def get_tags(self, key: str) -> Optional[List[str]]:
        async with self._lock:
            await self._ensure_initialized()
            item = self._index.get(key)
            if item is None or self._is_expired(item, self._now()):
                return None
            return list(item.get("tags") or [])

    async def get_stats(self) -> CacheStats:
        async with self._lock:
            await self._ensure_initialized()
            created = [item.get("created") for item in self._index.values() if item.get("created") is not None]
            return CacheStats(
                entries=len(self._index),
                total_size=self._total_size(),
                hits=self._stats["hits"],
                misses=self._stats["misses"],
                evictions=self._stats["evictions"],
                oldest_entry=min(created) if created else None,
                newest_entry=max(created) if created else None,
            )

    async def cleanup(self) -> int:
        async with self._lock:
            await self._ensure_initialized()
            removed = await self._cleanup_locked()
            await self._save_index()
            return removed

    async def _cleanup_locked(self) -> int:
        now = self._now()
        removed = 0

        for key in [k for k, item in self._index.items() if self._is_expired(item, now)]:
            await self._remove_entry(key)
            removed += 1

        total = self._total_size()
        if total > self.max_size:
            target = self.max_size * CLEANUP_TARGET_RATIO
            by_access = sorted(
                self._index.items(),
                key=lambda pair: pair[1].get("lastAccessed") or pair[1].get("created") or 0
            )
            for key, item in by_access:
                if total <= target:
                    break
                total -= int(item.get("size", 0))
                await self._remove_entry(key)
                self._stats["evictions"] += 1
                removed += 1

        if removed:
            self.logger.info("Cache cleanup completed", extra={
                "removed": removed,
                "total_size": self._total_size()
            })
        return removed

    async def destroy(self) -> None:
        await super().destroy()
        async with self._lock:
            if self._initialized:
                await self._save_index()
