"""Tests for the file-system cache storage."""

import json
import os

import pytest

from event_import_pipeline.core.exceptions import CacheError
from event_import_pipeline.models.cache import CacheSetOptions
from event_import_pipeline.storage.file_system_storage import INDEX_FILE_NAME, FileSystemCacheStorage


def _cache_files(root):
    return [
        os.path.join(dirpath, name)
        for dirpath, _, names in os.walk(root)
        for name in names
        if name.endswith(".cache")
    ]


@pytest.mark.asyncio
async def test_set_writes_sharded_file_and_index(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), clock=clock)

    await storage.set("key-1", {"rows": [1, 2, 3]}, CacheSetOptions(tags=["dataset:1"]))

    files = _cache_files(tmp_path)
    assert len(files) == 1
    shard = os.path.basename(os.path.dirname(files[0]))
    assert os.path.basename(files[0]).startswith(shard)

    with open(tmp_path / INDEX_FILE_NAME, encoding="utf-8") as f:
        index = json.load(f)
    item = index["index"]["key-1"]
    assert item["tags"] == ["dataset:1"]
    assert item["expires"] == clock() + 3600
    assert item["size"] > 0

    entry = await storage.get("key-1")
    assert entry.value == {"rows": [1, 2, 3]}
    assert entry.tags == ["dataset:1"]


@pytest.mark.asyncio
async def test_expired_entry_is_a_miss_and_removed(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), default_ttl=10, clock=clock)
    await storage.set("k", "v")

    clock.advance(10)

    assert await storage.get("k") is None
    assert _cache_files(tmp_path) == []
    stats = await storage.get_stats()
    assert stats.misses == 1
    assert stats.entries == 0


@pytest.mark.asyncio
async def test_corrupted_file_is_removed(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), clock=clock)
    await storage.set("k", "v")

    [path] = _cache_files(tmp_path)
    with open(path, "w", encoding="utf-8") as f:
        f.write("{not json")

    assert await storage.get("k") is None
    assert not await storage.has("k")


@pytest.mark.asyncio
async def test_index_survives_restart_and_prunes_missing_files(tmp_path, clock):
    first = FileSystemCacheStorage(str(tmp_path), clock=clock)
    await first.set("keep", 1)
    await first.set("lose", 2)
    await first.get("keep")
    await first.destroy()

    lost_file = first._absolute_path(first._relative_path("lose"))
    os.remove(lost_file)

    second = FileSystemCacheStorage(str(tmp_path), clock=clock)
    assert await second.keys() == ["keep"]
    assert (await second.get("keep")).value == 1

    stats = await second.get_stats()
    # one hit from the first instance, one from the second
    assert stats.hits == 2


@pytest.mark.asyncio
async def test_cleanup_evicts_least_recently_accessed_to_eighty_percent(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), max_size=6000, clock=clock)
    payload = "x" * 1000

    for i in range(5):
        await storage.set(f"k{i}", payload)
        clock.advance(1)

    # Refresh k0 so k1 becomes the least recently accessed
    await storage.get("k0")
    clock.advance(1)
    await storage.set("k5", payload)

    stats = await storage.get_stats()
    assert stats.total_size <= 6000 * 0.8
    assert stats.evictions == 2

    keys = await storage.keys()
    assert sorted(keys) == ["k0", "k3", "k4", "k5"]


@pytest.mark.asyncio
async def test_reading_tags_leaves_access_order_alone(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), clock=clock)
    await storage.set("k0", "old", CacheSetOptions(tags=["dataset:1"]))
    clock.advance(5)

    assert await storage.get_tags("k0") == ["dataset:1"]
    assert await storage.get_tags("missing") is None

    with open(tmp_path / INDEX_FILE_NAME, encoding="utf-8") as f:
        item = json.load(f)["index"]["k0"]
    assert item["lastAccessed"] == item["created"]
    assert (await storage.get_stats()).hits == 0

    clock.advance(3600)
    assert await storage.get_tags("k0") is None


@pytest.mark.asyncio
async def test_cleanup_purges_expired_entries(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), clock=clock)
    await storage.set("short", 1, CacheSetOptions(ttl=5))
    await storage.set("long", 2, CacheSetOptions(ttl=500))

    clock.advance(6)

    assert await storage.cleanup() == 1
    assert await storage.keys() == ["long"]


@pytest.mark.asyncio
async def test_clear_by_pattern(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), clock=clock)
    await storage.set("http:GET:a", 1)
    await storage.set("http:GET:b", 2)
    await storage.set("other", 3)

    assert await storage.clear(r"^http:") == 2
    assert await storage.keys() == ["other"]


@pytest.mark.asyncio
async def test_non_json_value_raises_cache_error(tmp_path, clock):
    storage = FileSystemCacheStorage(str(tmp_path), clock=clock)

    with pytest.raises(CacheError):
        await storage.set("k", object())
