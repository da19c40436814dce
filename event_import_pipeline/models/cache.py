"""
Cache data models for Event Import Pipeline

Entries, per-write options and backend statistics shared by all cache
storage backends.
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


@dataclass
class CacheEntry:
    """
    Cached value with bookkeeping metadata.

    Timestamps are epoch seconds taken from the owning backend's clock.
    """
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float] = None
    access_count: int = 0
    last_accessed_at: Optional[float] = None
    size: int = 0
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "accessCount": self.access_count,
            "lastAccessedAt": self.last_accessed_at,
            "size": self.size,
            "tags": list(self.tags),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntry':
        return cls(
            key=data["key"],
            value=data.get("value"),
            created_at=float(data["createdAt"]),
            expires_at=data.get("expiresAt"),
            access_count=int(data.get("accessCount", 0)),
            last_accessed_at=data.get("lastAccessedAt"),
            size=int(data.get("size", 0)),
            tags=list(data.get("tags") or []),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class CacheSetOptions:
    """
    Per-write options.

    A ``ttl`` of None or 0 means "use the backend default".
    """
    ttl: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheStats:
    entries: int = 0
    total_size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    oldest_entry: Optional[float] = None
    newest_entry: Optional[float] = None

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "totalSize": self.total_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hitRate": self.hit_rate,
            "oldestEntry": self.oldest_entry,
            "newestEntry": self.newest_entry,
        }
