"""
Job queue collaborator for Event Import Pipeline

The pipeline only needs ``queue(task, input)``; ``InMemoryJobQueue`` is the
FIFO implementation used by the in-process pipeline driver and the CLI.
"""

import itertools
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from ..core.exceptions import QueueError
from ..utils.logger import get_logger, set_log_context

HISTORY_LIMIT = 1000


@dataclass
class QueuedJob:
    id: str
    task: str
    input: Dict[str, Any]
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task,
            "input": self.input,
            "queuedAt": self.queued_at.isoformat(),
        }


class JobQueue(ABC):
    """Contract of the external job queue."""

    @abstractmethod
    async def queue(self, task: str, input: Dict[str, Any]) -> QueuedJob:
        """
        Enqueue a task.

        Args:
            task: Task slug (e.g. ``create-events``)
            input: Task input payload

        Returns:
            The queued job

        Raises:
            QueueError: If the job cannot be enqueued
        """
        pass


class InMemoryJobQueue(JobQueue):
    """
    FIFO queue kept in process memory.

    Supports pausing, which makes ``dequeue`` return None without dropping
    queued work. Only the last ``history_limit`` enqueued jobs are kept
    in ``history``.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT):
        self._jobs: Deque[QueuedJob] = deque()
        self._history: Deque[QueuedJob] = deque(maxlen=history_limit)
        self._total_enqueued = 0
        self._ids = itertools.count(1)
        self._is_paused = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_queue")

    async def queue(self, task: str, input: Dict[str, Any]) -> QueuedJob:
        if not task:
            raise QueueError("queue", "task is required")

        job = QueuedJob(id=str(next(self._ids)), task=task, input=dict(input or {}))
        self._jobs.append(job)
        self._history.append(job)
        self._total_enqueued += 1

        self.logger.info("Job enqueued", extra={
            "queued_job_id": job.id,
            "task": task,
            "queue_size": len(self._jobs)
        })
        return job

    async def dequeue(self) -> Optional[QueuedJob]:
        """Pop the oldest job, or None when empty or paused."""
        if self._is_paused or not self._jobs:
            return None
        job = self._jobs.popleft()
        self.logger.debug("Job dequeued", extra={
            "queued_job_id": job.id,
            "task": job.task,
            "remaining_queue_size": len(self._jobs)
        })
        return job

    def pending(self, task: Optional[str] = None) -> List[QueuedJob]:
        return [job for job in self._jobs if task is None or job.task == task]

    @property
    def history(self) -> List[QueuedJob]:
        """The most recently enqueued jobs, oldest first, up to ``history_limit``."""
        return list(self._history)

    def __len__(self) -> int:
        return len(self._jobs)

    async def pause_processing(self):
        self._is_paused = True
        self.logger.info("Queue processing paused")

    async def resume_processing(self):
        self._is_paused = False
        self.logger.info("Queue processing resumed")

    async def get_queue_statistics(self) -> Dict[str, Any]:
        pending_by_task: Dict[str, int] = {}
        for job in self._jobs:
            pending_by_task[job.task] = pending_by_task.get(job.task, 0) + 1
        return {
            "queue_size": len(self._jobs),
            "pending_by_task": pending_by_task,
            "total_enqueued": self._total_enqueued,
            "is_paused": self._is_paused
        }
