"""
Base cache storage interface.

Defines the contract every cache backend implements, plus the shared
periodic-cleanup lifecycle.
"""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..models.cache import CacheEntry, CacheSetOptions, CacheStats
from ..utils.logger import get_logger

Clock = Callable[[], float]


class BaseCacheStorage(ABC):
    """
    Abstract base class for cache storage backends.

    Backends own their entries exclusively: TTL expiry and capacity eviction
    happen inside the backend, never in the caller.
    """

    def __init__(self, default_ttl: float = 3600, clock: Optional[Clock] = None):
        """
        Initialize the storage backend.

        Args:
            default_ttl: TTL in seconds applied when a write does not give one
            clock: Callable returning epoch seconds, injectable for tests
        """
        self.default_ttl = default_ttl
        self._clock: Clock = clock or time.time
        self._cleanup_task: Optional[asyncio.Task] = None
        self.logger = get_logger(__name__)

    def _now(self) -> float:
        return self._clock()

    def _expiry_for(self, options: Optional[CacheSetOptions]) -> float:
        ttl = options.ttl if options and options.ttl else self.default_ttl
        return self._now() + ttl

    @staticmethod
    def _matches(key: str, pattern: Optional[str]) -> bool:
        return pattern is None or re.search(pattern, key) is not None

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """
        Fetch a live entry.

        Returns:
            The entry, or None when missing or expired
        """
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, options: Optional[CacheSetOptions] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def has(self, key: str) -> bool:
        pass

    @abstractmethod
    async def clear(self, pattern: Optional[str] = None) -> int:
        """
        Remove entries whose key matches ``pattern`` (all when None).

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        pass

    @abstractmethod
    async def get_tags(self, key: str) -> Optional[List[str]]:
        """Tags of a live entry, read without counting as an access or hit."""
        pass

    @abstractmethod
    async def get_stats(self) -> CacheStats:
        pass

    @abstractmethod
    async def cleanup(self) -> int:
        """
        Purge expired entries and enforce capacity.

        Returns:
            Number of entries removed
        """
        pass

    async def get_many(self, keys: List[str]) -> Dict[str, CacheEntry]:
        found = {}
        for key in keys:
            entry = await self.get(key)
            if entry is not None:
                found[key] = entry
        return found

    async def set_many(self, items: Dict[str, Any], options: Optional[CacheSetOptions] = None) -> None:
        for key, value in items.items():
            await self.set(key, value, options)

    def start_periodic_cleanup(self, interval_ms: int) -> bool:
        """
        Schedule ``cleanup()`` every ``interval_ms`` on the running loop.

        Returns:
            True if a cleanup task was started
        """
        if interval_ms <= 0 or self._cleanup_task is not None:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop, periodic cache cleanup not scheduled")
            return False
        self._cleanup_task = loop.create_task(self._cleanup_loop(interval_ms / 1000.0))
        return True

    async def _cleanup_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self.cleanup()
                if removed:
                    self.logger.debug("Periodic cache cleanup", extra={"removed": removed})
            except Exception:
                self.logger.error("Periodic cache cleanup failed", exc_info=True)

    async def destroy(self) -> None:
        """Stop background work and release resources."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    @property
    def backend_name(self) -> str:
        return self.__class__.__name__
