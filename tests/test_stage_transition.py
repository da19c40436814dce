"""Tests for the stage graph and the stage transition service."""

import asyncio

import pytest

from event_import_pipeline.core.exceptions import QueueError
from event_import_pipeline.models.import_job import (
    ImportJob,
    ProcessingStage,
    can_transition_to,
    get_valid_transitions,
)
from event_import_pipeline.services.stage_transition import StageTransitionService
from event_import_pipeline.utils.job_queue import InMemoryJobQueue, JobQueue


class SlowQueue(JobQueue):
    """Queue whose ``queue`` call blocks until released."""

    def __init__(self):
        self.calls = []
        self.release = asyncio.Event()

    async def queue(self, task, input):
        self.calls.append((task, input))
        await self.release.wait()


class FailingQueue(JobQueue):
    async def queue(self, task, input):
        raise QueueError("queue", "broker unavailable")


def job(stage, job_id=1):
    return {"id": job_id, "stage": stage}


@pytest.fixture
def service(job_queue, clock):
    return StageTransitionService(job_queue, clock=clock)


@pytest.mark.parametrize("from_stage,to_stage", [
    ("analyze-duplicates", "detect-schema"),
    ("detect-schema", "validate-schema"),
    ("validate-schema", "await-approval"),
    ("validate-schema", "geocode-batch"),
    ("await-approval", "create-schema-version"),
    ("create-schema-version", "geocode-batch"),
    ("geocode-batch", "create-events"),
    ("create-events", "completed"),
    ("completed", "completed"),
    ("detect-schema", "failed"),
    ("completed", "failed"),
])
def test_allowed_edges(from_stage, to_stage):
    assert can_transition_to(from_stage, to_stage)


@pytest.mark.parametrize("from_stage,to_stage", [
    ("analyze-duplicates", "create-events"),
    ("detect-schema", "analyze-duplicates"),
    ("validate-schema", "create-schema-version"),
    ("completed", "analyze-duplicates"),
    ("failed", "completed"),
    ("unknown", "detect-schema"),
    ("detect-schema", "unknown"),
])
def test_rejected_edges(from_stage, to_stage):
    assert not can_transition_to(from_stage, to_stage)


def test_valid_transitions_include_self_and_failed():
    assert get_valid_transitions("validate-schema") == [
        ProcessingStage.VALIDATE_SCHEMA,
        ProcessingStage.AWAIT_APPROVAL,
        ProcessingStage.GEOCODE_BATCH,
        ProcessingStage.FAILED,
    ]
    assert get_valid_transitions("failed") == [ProcessingStage.FAILED]
    assert get_valid_transitions("nope") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("from_stage,to_stage,task,batched", [
    ("analyze-duplicates", "detect-schema", "detect-schema", True),
    ("detect-schema", "validate-schema", "validate-schema", False),
    ("await-approval", "create-schema-version", "create-schema-version", False),
    ("validate-schema", "geocode-batch", "geocode-batch", True),
    ("geocode-batch", "create-events", "create-events", True),
])
async def test_transition_queues_next_task(service, job_queue, from_stage, to_stage, task, batched):
    result = await service.process_stage_transition(job(to_stage, 9), job(from_stage, 9))

    assert result.success
    assert result.job_queued
    assert result.queued_job_type == task

    [queued] = job_queue.history
    assert queued.task == task
    expected_input = {"importJobId": 9, "batchNumber": 0} if batched else {"importJobId": 9}
    assert queued.input == expected_input


@pytest.mark.asyncio
async def test_new_job_queues_duplicate_analysis(service, job_queue):
    result = await service.process_stage_transition(ImportJob(id=4, dataset=1, import_file=2))

    assert result.to_dict() == {
        "success": True,
        "jobQueued": True,
        "queuedJobType": "analyze-duplicates",
        "error": None,
        "errorCode": None,
    }
    assert job_queue.history[0].input == {"importJobId": 4}


@pytest.mark.asyncio
@pytest.mark.parametrize("from_stage,to_stage", [
    ("validate-schema", "await-approval"),
    ("create-events", "completed"),
    ("geocode-batch", "failed"),
])
async def test_non_queueing_stages(service, job_queue, from_stage, to_stage):
    result = await service.process_stage_transition(job(to_stage), job(from_stage))

    assert result.success
    assert not result.job_queued
    assert job_queue.history == []


@pytest.mark.asyncio
async def test_same_stage_is_a_no_op(service, job_queue):
    result = await service.process_stage_transition(job("create-events"), job("create-events"))

    assert result.success
    assert not result.job_queued
    assert job_queue.history == []


@pytest.mark.asyncio
async def test_invalid_transition_has_no_side_effects(service, job_queue):
    result = await service.process_stage_transition(job("create-events"), job("analyze-duplicates"))

    assert not result.success
    assert result.error == "Invalid stage transition from 'analyze-duplicates' to 'create-events'"
    assert result.error_code == "INVALID_STAGE_TRANSITION"
    assert job_queue.history == []
    assert service.get_transitioning_count() == 0


@pytest.mark.asyncio
async def test_unknown_target_stage_is_rejected(service):
    result = await service.process_stage_transition(job("teleport"))
    assert not result.success
    assert result.error_code == "INVALID_STAGE_TRANSITION"


@pytest.mark.asyncio
async def test_queue_failure_is_reported_and_lock_released(clock):
    service = StageTransitionService(FailingQueue(), clock=clock)

    result = await service.process_stage_transition(job("detect-schema"), job("analyze-duplicates"))

    assert not result.success
    assert "broker unavailable" in result.error
    assert not service.is_transitioning(1)


@pytest.mark.asyncio
async def test_identical_concurrent_transitions_are_mutually_exclusive(clock):
    queue = SlowQueue()
    service = StageTransitionService(queue, clock=clock)

    first = asyncio.ensure_future(
        service.process_stage_transition(job("detect-schema"), job("analyze-duplicates"))
    )
    await asyncio.sleep(0)
    assert service.is_transitioning(1, "analyze-duplicates", "detect-schema")

    second = await service.process_stage_transition(job("detect-schema"), job("analyze-duplicates"))
    assert not second.success
    assert second.error == "Transition already in progress"
    assert second.error_code == "TRANSITION_IN_PROGRESS"

    queue.release.set()
    assert (await first).success
    assert len(queue.calls) == 1
    assert not service.is_transitioning(1)


@pytest.mark.asyncio
async def test_different_jobs_transition_concurrently(clock):
    queue = SlowQueue()
    service = StageTransitionService(queue, clock=clock)

    pending = [
        asyncio.ensure_future(service.process_stage_transition(job("detect-schema", n), job("analyze-duplicates", n)))
        for n in (1, 2)
    ]
    await asyncio.sleep(0)
    assert service.get_transitioning_count() == 2

    queue.release.set()
    results = await asyncio.gather(*pending)
    assert all(result.success for result in results)
    assert len(queue.calls) == 2


@pytest.mark.asyncio
async def test_same_job_transitions_on_different_edges_do_not_block(clock):
    queue = SlowQueue()
    service = StageTransitionService(queue, clock=clock)

    pending = [
        asyncio.ensure_future(service.process_stage_transition(job("detect-schema"), job("analyze-duplicates"))),
        asyncio.ensure_future(service.process_stage_transition(job("validate-schema"), job("detect-schema"))),
    ]
    await asyncio.sleep(0)
    assert service.is_transitioning(1, "analyze-duplicates", "detect-schema")
    assert service.is_transitioning(1, "detect-schema", "validate-schema")
    assert service.get_transitioning_count() == 2

    failed = await service.process_stage_transition(job("failed"), job("detect-schema"))
    assert failed.success
    assert service.get_transitioning_count() == 2

    queue.release.set()
    results = await asyncio.gather(*pending)
    assert all(result.success for result in results)
    assert [task for task, _ in queue.calls] == ["detect-schema", "validate-schema"]
    assert not service.is_transitioning(1)


def test_cleanup_old_locks(service, clock):
    service._try_acquire(("1", "analyze-duplicates", "detect-schema"))
    clock.advance(200)
    service._try_acquire(("2", "detect-schema", "validate-schema"))
    clock.advance(100)

    assert service.cleanup_old_locks() == 1
    assert not service.is_transitioning(1)
    assert service.is_transitioning(2)
    assert service.is_transitioning(2, to_stage="validate-schema")
    assert not service.is_transitioning(2, to_stage="completed")


@pytest.mark.asyncio
async def test_cleanup_task_and_clear(service, clock):
    service._try_acquire(("1", None, "analyze-duplicates"))
    service._try_acquire(("2", None, "analyze-duplicates"))

    assert await service.cleanup_task() == {"cleaned": 0}
    clock.advance(301)
    assert await service.cleanup_task(max_age_seconds=600) == {"cleaned": 0}

    assert service.clear_transition_locks() == 2
    assert service.get_transitioning_count() == 0


def test_locks_are_per_service_instance(job_queue, clock):
    first = StageTransitionService(job_queue, clock=clock)
    second = StageTransitionService(InMemoryJobQueue(), clock=clock)

    first._try_acquire(("1", None, "analyze-duplicates"))

    assert first.is_transitioning(1)
    assert not second.is_transitioning(1)
