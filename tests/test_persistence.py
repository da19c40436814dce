"""Tests for the in-memory document store."""

import pytest

from event_import_pipeline.core.exceptions import PersistenceError
from event_import_pipeline.utils.persistence import EVENTS, IMPORT_JOBS, matches_where


@pytest.mark.asyncio
async def test_create_assigns_ids_and_timestamps(persistence):
    first = await persistence.create(EVENTS, {"uniqueId": "a"})
    second = await persistence.create(EVENTS, {"uniqueId": "b"})

    assert (first["id"], second["id"]) == (1, 2)
    assert "createdAt" in first and "updatedAt" in first


@pytest.mark.asyncio
async def test_timestamps_are_utc_and_follow_the_clock(persistence, clock):
    doc = await persistence.create(EVENTS, {"uniqueId": "a"})
    clock.advance(60)
    updated = await persistence.update(EVENTS, doc["id"], {"uniqueId": "b"})

    assert doc["createdAt"] == "2023-11-14T22:13:20+00:00"
    assert updated["createdAt"] == doc["createdAt"]
    assert updated["updatedAt"] == "2023-11-14T22:14:20+00:00"


@pytest.mark.asyncio
async def test_explicit_ids_and_duplicates(persistence):
    await persistence.create(EVENTS, {"id": 5})
    auto = await persistence.create(EVENTS, {})

    assert auto["id"] == 1
    with pytest.raises(PersistenceError):
        await persistence.create(EVENTS, {"id": "5"})


@pytest.mark.asyncio
async def test_documents_are_copied(persistence):
    data = {"payload": {"n": 1}}
    created = await persistence.create(EVENTS, data)
    data["payload"]["n"] = 2
    created["payload"]["n"] = 3

    assert (await persistence.find_by_id(EVENTS, created["id"]))["payload"] == {"n": 1}


@pytest.mark.asyncio
async def test_update_merges_and_accepts_string_ids(persistence):
    created = await persistence.create(IMPORT_JOBS, {"stage": "analyze-duplicates", "errors": []})

    updated = await persistence.update(IMPORT_JOBS, str(created["id"]), {"stage": "detect-schema"})

    assert updated["stage"] == "detect-schema"
    assert updated["errors"] == []
    with pytest.raises(PersistenceError):
        await persistence.update(IMPORT_JOBS, 99, {"stage": "failed"})


@pytest.mark.asyncio
async def test_find_by_id_and_delete(persistence):
    created = await persistence.create(EVENTS, {})

    assert await persistence.delete(EVENTS, created["id"])
    assert await persistence.find_by_id(EVENTS, created["id"]) is None
    assert not await persistence.delete(EVENTS, created["id"])


@pytest.mark.asyncio
async def test_find_and_count_with_where(persistence):
    for n, dataset in enumerate([1, 1, 2]):
        await persistence.create(EVENTS, {"dataset": dataset, "uniqueId": f"u{n}", "data": {"n": n}})

    assert await persistence.count(EVENTS, {"dataset": {"equals": 1}}) == 2
    assert await persistence.count(EVENTS) == 3
    found = await persistence.find(EVENTS, {"uniqueId": {"in": ["u0", "u2"]}}, limit=1)
    assert [doc["uniqueId"] for doc in found] == ["u0"]
    assert await persistence.count(EVENTS, {"data.n": {"greater_than": 0}}) == 2


def test_where_operators():
    doc = {"dataset": {"id": 3}, "stage": "completed", "rows": 10, "note": None}

    assert matches_where(doc, {"dataset": 3})
    assert matches_where(doc, {"dataset": "3"})
    assert matches_where(doc, {"stage": {"not_equals": "failed"}})
    assert matches_where(doc, {"stage": {"not_in": ["failed"]}})
    assert matches_where(doc, {"note": {"exists": False}, "rows": {"less_than": 11}})
    assert matches_where(doc, {"or": [{"stage": "failed"}, {"rows": 10}]})
    assert not matches_where(doc, {"and": [{"stage": "completed"}, {"rows": 9}]})

    with pytest.raises(PersistenceError):
        matches_where(doc, {"rows": {"like": 1}})


@pytest.mark.asyncio
async def test_after_change_hooks_receive_previous_document(persistence):
    calls = []

    async def hook(doc, previous, collection):
        calls.append((collection, doc["stage"], previous["stage"] if previous else None))

    persistence.add_after_change_hook(IMPORT_JOBS, hook)
    persistence.add_after_change_hook(IMPORT_JOBS, lambda doc, previous, collection: calls.append("sync"))

    created = await persistence.create(IMPORT_JOBS, {"stage": "analyze-duplicates"})
    await persistence.update(IMPORT_JOBS, created["id"], {"stage": "detect-schema"})
    await persistence.create(EVENTS, {"stage": "ignored"})

    assert calls == [
        (IMPORT_JOBS, "analyze-duplicates", None),
        "sync",
        (IMPORT_JOBS, "detect-schema", "analyze-duplicates"),
        "sync",
    ]
