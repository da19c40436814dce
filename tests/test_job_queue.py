"""Tests for the in-memory job queue."""

import pytest

from event_import_pipeline.core.exceptions import QueueError
from event_import_pipeline.utils.job_queue import InMemoryJobQueue


@pytest.mark.asyncio
async def test_fifo_order_and_history(job_queue):
    await job_queue.queue("create-events", {"importJobId": 1, "batchNumber": 0})
    await job_queue.queue("detect-schema", {"importJobId": 2})

    assert len(job_queue) == 2
    assert [job.task for job in job_queue.pending()] == ["create-events", "detect-schema"]
    assert [job.task for job in job_queue.pending("detect-schema")] == ["detect-schema"]

    first = await job_queue.dequeue()
    assert first.task == "create-events"
    assert first.input == {"importJobId": 1, "batchNumber": 0}
    assert first.to_dict()["id"] == "1"

    await job_queue.dequeue()
    assert await job_queue.dequeue() is None
    assert len(job_queue.history) == 2


@pytest.mark.asyncio
async def test_input_is_copied(job_queue):
    payload = {"importJobId": 1}
    await job_queue.queue("analyze-duplicates", payload)
    payload["importJobId"] = 2

    assert (await job_queue.dequeue()).input == {"importJobId": 1}


@pytest.mark.asyncio
async def test_pause_keeps_pending_jobs(job_queue):
    await job_queue.queue("analyze-duplicates", {"importJobId": 1})
    await job_queue.pause_processing()

    assert await job_queue.dequeue() is None
    stats = await job_queue.get_queue_statistics()
    assert stats == {
        "queue_size": 1,
        "pending_by_task": {"analyze-duplicates": 1},
        "total_enqueued": 1,
        "is_paused": True,
    }

    await job_queue.resume_processing()
    assert (await job_queue.dequeue()).task == "analyze-duplicates"


@pytest.mark.asyncio
async def test_task_is_required(job_queue):
    with pytest.raises(QueueError):
        await job_queue.queue("", {})


@pytest.mark.asyncio
async def test_history_keeps_only_recent_jobs():
    job_queue = InMemoryJobQueue(history_limit=3)
    for n in range(1, 6):
        await job_queue.queue("create-events", {"importJobId": 1, "batchNumber": n})

    assert [job.input["batchNumber"] for job in job_queue.history] == [3, 4, 5]
    assert len(job_queue) == 5

    stats = await job_queue.get_queue_statistics()
    assert stats["total_enqueued"] == 5
    assert stats["queue_size"] == 5
