"""
In-memory LRU cache storage.
"""

import json
from collections import OrderedDict
from typing import Any, Callable, List, Optional

from .base import BaseCacheStorage, Clock
from ..models.cache import CacheEntry, CacheSetOptions, CacheStats
from ..utils.logger import get_logger, set_log_context

SizeCalculator = Callable[[Any], int]
EvictionCallback = Callable[[str, CacheEntry], None]


def default_size_calculator(value: Any) -> int:
    """Size of a value as the length of its JSON serialization."""
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(str(value))


class MemoryCacheStorage(BaseCacheStorage):
    """
    Bounded LRU store.

    Capacity is limited by entry count and by total size. Size comes from
    ``metadata["size"]`` when the writer supplies it, otherwise from the size
    calculator. The least recently used entry is evicted first and
    ``on_evict`` is called synchronously for every eviction.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        max_size: int = 100 * 1024 * 1024,
        default_ttl: float = 3600,
        size_calculator: Optional[SizeCalculator] = None,
        on_evict: Optional[EvictionCallback] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self.max_entries = max_entries
        self.max_size = max_size
        self.size_calculator = size_calculator or default_size_calculator
        self.on_evict = on_evict

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._total_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="memory_cache_storage")

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_size -= entry.size
        return entry

    def _evict_lru(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._total_size -= entry.size
        self._evictions += 1
        if self.on_evict is not None:
            self.on_evict(key, entry)

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._now()):
            self._remove(key)
            return None
        return entry

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        entry.access_count += 1
        entry.last_accessed_at = self._now()
        self._hits += 1
        return entry

    async def set(self, key: str, value: Any, options: Optional[CacheSetOptions] = None) -> None:
        options = options or CacheSetOptions()
        custom_size = options.metadata.get("size") if options.metadata else None
        size = int(custom_size) if isinstance(custom_size, (int, float)) else self.size_calculator(value)

        if size > self.max_size:
            self.logger.warning("Cache value larger than storage capacity, not stored", extra={
                "key": key,
                "size": size,
                "max_size": self.max_size
            })
            return

        self._remove(key)
        while self._entries and (
            len(self._entries) >= self.max_entries or self._total_size + size > self.max_size
        ):
            self._evict_lru()

        now = self._now()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=self._expiry_for(options),
            last_accessed_at=now,
            size=size,
            tags=list(options.tags),
            metadata=dict(options.metadata),
        )
        self._total_size += size

    async def delete(self, key: str) -> bool:
        return self._remove(key) is not None

    async def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    async def clear(self, pattern: Optional[str] = None) -> int:
        if pattern is None:
            count = len(self._entries)
            self._entries.clear()
            self._total_size = 0
            return count

        matching = [key for key in self._entries if self._matches(key, pattern)]
        for key in matching:
            self._remove(key)
        return len(matching)

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        now = self._now()
        return [
            key for key, entry in self._entries.items()
            if not entry.is_expired(now) and self._matches(key, pattern)
        ]

    async def get_tags(self, key: str) -> Optional[List[str]]:
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._now()):
            return None
        return list(entry.tags)

    async def get_stats(self) -> CacheStats:
        created = [entry.created_at for entry in self._entries.values()]
        return CacheStats(
            entries=len(self._entries),
            total_size=self._total_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    async def cleanup(self) -> int:
        now = self._now()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        return len(expired)

    async def destroy(self) -> None:
        await super().destroy()
        self._entries.clear()
        self._total_size = 0
