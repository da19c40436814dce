"""
Cache storage backends for Event Import Pipeline
"""

from .base import BaseCacheStorage
from .memory_storage import MemoryCacheStorage, default_size_calculator
from .file_system_storage import FileSystemCacheStorage

__all__ = [
    "BaseCacheStorage",
    "MemoryCacheStorage",
    "FileSystemCacheStorage",
    "default_size_calculator",
]
