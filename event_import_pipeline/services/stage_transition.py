"""
StageTransitionService for Event Import Pipeline

Validates import job stage changes against the stage graph, queues the job
for the new stage and guards against duplicate concurrent transitions with
in-process locks keyed by ``(job_id, from_stage, to_stage)``.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from ..core.exceptions import InvalidStageTransitionError, TransitionInProgressError
from ..models.import_job import ImportJob, JobTask, ProcessingStage, can_transition_to, parse_stage
from ..utils.job_queue import JobQueue
from ..utils.logger import get_logger, set_log_context

LockKey = Tuple[str, Optional[str], str]
JobLike = Union[ImportJob, Dict[str, Any]]

DEFAULT_LOCK_MAX_AGE_SECONDS = 300


@dataclass
class StageTransitionResult:
    success: bool
    job_queued: bool = False
    queued_job_type: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "jobQueued": self.job_queued,
            "queuedJobType": self.queued_job_type,
            "error": self.error,
            "errorCode": self.error_code,
        }


# stage entered -> (task to queue, whether input carries batchNumber)
STAGE_TASKS: Dict[ProcessingStage, Tuple[JobTask, bool]] = {
    ProcessingStage.ANALYZE_DUPLICATES: (JobTask.ANALYZE_DUPLICATES, False),
    ProcessingStage.DETECT_SCHEMA: (JobTask.DETECT_SCHEMA, True),
    ProcessingStage.VALIDATE_SCHEMA: (JobTask.VALIDATE_SCHEMA, False),
    ProcessingStage.CREATE_SCHEMA_VERSION: (JobTask.CREATE_SCHEMA_VERSION, False),
    ProcessingStage.GEOCODE_BATCH: (JobTask.GEOCODE_BATCH, True),
    ProcessingStage.CREATE_EVENTS: (JobTask.CREATE_EVENTS, True),
}


def _job_fields(job: Optional[JobLike]) -> Tuple[Any, Any]:
    if job is None:
        return None, None
    if isinstance(job, ImportJob):
        return job.id, job.stage
    return job.get("id"), job.get("stage")


def _stage_value(stage: Any) -> Optional[str]:
    if stage is None:
        return None
    return stage.value if isinstance(stage, ProcessingStage) else str(stage)


class StageTransitionService:
    """
    Executes import job stage transitions.

    Lock state lives on the instance, so each pipeline (or test) owns an
    independent lock set. The check-and-set on a lock key happens under a
    mutex; the lock itself is held across the awaited queue call and always
    released before ``process_stage_transition`` returns.
    """

    def __init__(self, job_queue: JobQueue, clock: Optional[Callable[[], float]] = None):
        """
        Initialize StageTransitionService.

        Args:
            job_queue: Queue receiving the next stage's task
            clock: Callable returning epoch seconds, injectable for tests
        """
        self.job_queue = job_queue
        self._clock = clock or time.time
        self._locks: Dict[LockKey, float] = {}
        self._mutex = threading.Lock()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="stage_transition")

    # Locking

    def _try_acquire(self, key: LockKey) -> bool:
        with self._mutex:
            if key in self._locks:
                return False
            self._locks[key] = self._clock()
            return True

    def _release(self, key: LockKey):
        with self._mutex:
            self._locks.pop(key, None)

    def is_transitioning(self, job_id: Any, from_stage: Any = None, to_stage: Any = None) -> bool:
        """Whether a matching transition is in flight; None matches any stage."""
        from_value = _stage_value(from_stage)
        to_value = _stage_value(to_stage)
        with self._mutex:
            for lock_job_id, lock_from, lock_to in self._locks:
                if lock_job_id != str(job_id):
                    continue
                if from_stage is not None and lock_from != from_value:
                    continue
                if to_stage is not None and lock_to != to_value:
                    continue
                return True
        return False

    def get_transitioning_count(self) -> int:
        with self._mutex:
            return len(self._locks)

    def clear_transition_locks(self) -> int:
        """Drop every lock. Operational escape hatch."""
        with self._mutex:
            count = len(self._locks)
            self._locks.clear()
        self.logger.warning("Clearing all stage transition locks", extra={"cleared": count})
        return count

    def cleanup_old_locks(self, max_age_seconds: float = DEFAULT_LOCK_MAX_AGE_SECONDS) -> int:
        """Remove locks older than ``max_age_seconds``; returns the number removed."""
        cutoff = self._clock() - max_age_seconds
        with self._mutex:
            stale = [key for key, acquired_at in self._locks.items() if acquired_at <= cutoff]
            for key in stale:
                del self._locks[key]
        if stale:
            self.logger.warning("Removed stale stage transition locks", extra={
                "cleaned": len(stale),
                "locks": [list(key) for key in stale]
            })
        return len(stale)

    async def cleanup_task(self, max_age_seconds: float = DEFAULT_LOCK_MAX_AGE_SECONDS) -> Dict[str, int]:
        """Scheduled maintenance entry point."""
        return {"cleaned": self.cleanup_old_locks(max_age_seconds)}

    # Transitions

    def validate_transition(self, from_stage: Any, to_stage: Any) -> bool:
        return can_transition_to(from_stage, to_stage)

    async def process_stage_transition(self, new_job: JobLike,
                                       previous_job: Optional[JobLike] = None) -> StageTransitionResult:
        """
        Handle a stage change of an import job.

        Args:
            new_job: Job after the change (ImportJob or stored document)
            previous_job: Job before the change, None when just created

        Returns:
            StageTransitionResult; failures are reported, never raised
        """
        job_id, raw_to = _job_fields(new_job)
        _, raw_from = _job_fields(previous_job)
        to_value = _stage_value(raw_to)
        from_value = _stage_value(raw_from)

        if from_value == to_value:
            return StageTransitionResult(success=True)

        key: LockKey = (str(job_id), from_value, to_value)
        if not self._try_acquire(key):
            error = TransitionInProgressError(job_id, from_value, to_value)
            self.logger.warning("Stage transition already in progress", extra={
                "import_job_id": job_id,
                "from_stage": from_value,
                "to_stage": to_value
            })
            return StageTransitionResult(success=False, error=error.message, error_code=error.error_code)

        try:
            to_stage = parse_stage(to_value)
            valid = to_stage is not None and (
                from_value is None or self.validate_transition(from_value, to_stage)
            )
            if not valid:
                error = InvalidStageTransitionError(from_value, to_value)
                self.logger.error("Invalid stage transition", extra={
                    "import_job_id": job_id,
                    "from_stage": from_value,
                    "to_stage": to_value
                })
                return StageTransitionResult(success=False, error=error.message, error_code=error.error_code)

            self.logger.info("Processing stage transition", extra={
                "import_job_id": job_id,
                "from_stage": from_value,
                "to_stage": to_value
            })
            return await self._dispatch(job_id, to_stage)

        except Exception as e:
            self.logger.error("Stage transition failed", extra={
                "import_job_id": job_id,
                "from_stage": from_value,
                "to_stage": to_value
            }, exc_info=True)
            return StageTransitionResult(success=False, error=str(e))
        finally:
            self._release(key)

    async def _dispatch(self, job_id: Any, to_stage: ProcessingStage) -> StageTransitionResult:
        if to_stage in STAGE_TASKS:
            task, batched = STAGE_TASKS[to_stage]
            task_input: Dict[str, Any] = {"importJobId": job_id}
            if batched:
                task_input["batchNumber"] = 0
            await self.job_queue.queue(task.value, task_input)
            return StageTransitionResult(success=True, job_queued=True, queued_job_type=task.value)

        if to_stage == ProcessingStage.AWAIT_APPROVAL:
            self.logger.info("Import requires manual approval", extra={"import_job_id": job_id})
        elif to_stage == ProcessingStage.COMPLETED:
            self.logger.info("Import job completed successfully", extra={"import_job_id": job_id})
        elif to_stage == ProcessingStage.FAILED:
            self.logger.error("Import job failed", extra={"import_job_id": job_id})
        return StageTransitionResult(success=True)
