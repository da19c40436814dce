"""
Main ImportPipeline class that coordinates all services

Wires persistence, the job queue, caches, the stage transition service and
the task handlers together. Stage changes written to import jobs drive the
pipeline: an after-change hook turns every stage change into a queued task,
and ``run_next``/``drain`` execute queued tasks through the handler registry.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from ..jobs.analyze_duplicates import AnalyzeDuplicatesJob
from ..jobs.base import BaseJobHandler, JobHandlerContext
from ..jobs.create_events_batch import CreateEventsBatchJob
from ..jobs.stage_advance import create_stage_advance_handlers
from ..models.import_job import ImportFileStatus, JobTask, ProcessingStage
from ..services.cache import CacheManager
from ..services.id_generation import IdGenerationService
from ..services.stage_transition import StageTransitionService
from ..services.type_transformation import CustomTransform
from ..services.url_fetch_cache import UrlFetchCache
from ..utils.job_queue import InMemoryJobQueue, QueuedJob
from ..utils.logger import LoggerContext, get_logger, set_log_context
from ..utils.persistence import DATASETS, IMPORT_FILES, IMPORT_JOBS, InMemoryPersistence
from .config import PipelineConfig
from .exceptions import ImportJobNotFoundError, ImportPipelineError, InvalidStageTransitionError, error_registry


class ImportPipeline:
    """
    Main pipeline class that coordinates all services.

    Provides a unified interface for:
    - Registering datasets, import files and import jobs
    - Driving import jobs through the stage machine
    - Running queued tasks through registered handlers
    - Periodic maintenance of transition locks and caches
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        persistence: Optional[InMemoryPersistence] = None,
        job_queue: Optional[InMemoryJobQueue] = None,
        cache_manager: Optional[CacheManager] = None,
        url_fetch_cache: Optional[UrlFetchCache] = None,
        custom_transforms: Optional[Dict[str, CustomTransform]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the ImportPipeline.

        Args:
            config: Pipeline configuration, defaults to ``PipelineConfig()``
            persistence: Document store with after-change hook support
            job_queue: Queue shared by the transition service and handlers
            cache_manager: Registry of named caches
            url_fetch_cache: Optional HTTP cache for remote import sources
            custom_transforms: Named custom transformation callables
            clock: Callable returning epoch seconds, injectable for tests
        """
        self.config = config if config is not None else PipelineConfig()
        self._clock = clock or time.time

        self.persistence = persistence if persistence is not None else InMemoryPersistence(clock=self._clock)
        self.job_queue = job_queue if job_queue is not None else InMemoryJobQueue()
        self.cache_manager = cache_manager if cache_manager is not None else CacheManager(self.config.cache, clock=clock)
        self.url_fetch_cache = url_fetch_cache

        self.transitions = StageTransitionService(self.job_queue, clock=self._clock)
        self.context = JobHandlerContext(
            persistence=self.persistence,
            job_queue=self.job_queue,
            config=self.config,
            id_service=IdGenerationService(clock=self._clock),
            custom_transforms=dict(custom_transforms or {}),
            clock=self._clock,
        )
        self.progress = self.context.progress

        self._handlers: Dict[str, BaseJobHandler] = {}
        self.register_handler(AnalyzeDuplicatesJob(self.context))
        self.register_handler(CreateEventsBatchJob(self.context))
        for handler in create_stage_advance_handlers(self.context).values():
            self.register_handler(handler)

        self.persistence.add_after_change_hook(IMPORT_JOBS, self._on_import_job_change)

        # State tracking
        self._is_running = False
        self._maintenance_task: Optional[asyncio.Task] = None

        # Logger
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="pipeline")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self, maintenance_interval_ms: Optional[int] = None):
        """Start the pipeline and its periodic maintenance task."""
        interval_ms = self.config.cache.cleanup_interval_ms if maintenance_interval_ms is None else maintenance_interval_ms
        self.logger.info("Starting ImportPipeline", extra={
            "handlers": sorted(self._handlers),
            "maintenance_interval_ms": interval_ms,
            "url_fetch_cache_enabled": self.url_fetch_cache is not None
        })

        if interval_ms > 0 and self._maintenance_task is None:
            self._maintenance_task = asyncio.get_running_loop().create_task(
                self._maintenance_loop(interval_ms / 1000.0)
            )

        self._is_running = True
        self.logger.info("ImportPipeline started successfully")

    async def stop(self):
        """Stop maintenance and release caches and HTTP clients."""
        self.logger.info("Stopping ImportPipeline")

        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        try:
            await self.cache_manager.shutdown_all()
        except Exception:
            self.logger.error("Error shutting down caches", exc_info=True)

        if self.url_fetch_cache is not None:
            try:
                await self.url_fetch_cache.aclose()
            except Exception:
                self.logger.error("Error closing URL fetch cache", exc_info=True)

        self._is_running = False
        self.logger.info("ImportPipeline stopped")

    async def __aenter__(self) -> 'ImportPipeline':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # Handlers

    def register_handler(self, handler: BaseJobHandler):
        """Register ``handler`` for its task name, replacing any previous one."""
        if not handler.task:
            raise ImportPipelineError(f"Handler {handler.handler_name} has no task name", "INVALID_HANDLER")
        self._handlers[handler.task] = handler

    def get_handler(self, task: str) -> Optional[BaseJobHandler]:
        return self._handlers.get(task)

    # Stage machine

    async def _on_import_job_change(self, doc: Dict[str, Any], previous: Optional[Dict[str, Any]], collection: str):
        result = await self.transitions.process_stage_transition(doc, previous)
        if result.success or result.error_code == "TRANSITION_IN_PROGRESS":
            return

        self.logger.error("Stage transition rejected, failing import job", extra={
            "import_job_id": doc.get("id"),
            "stage": doc.get("stage"),
            "error": result.error
        })
        errors = list(doc.get("errors") or [])
        errors.append({"row": None, "error": result.error})
        await self.persistence.update(IMPORT_JOBS, doc["id"], {
            "stage": ProcessingStage.FAILED.value,
            "errors": errors,
        })

    async def create_import(self, dataset: Dict[str, Any], file_path: str,
                            sheet_index: int = 0, filename: Optional[str] = None) -> Dict[str, Any]:
        """
        Register a dataset (if new), an import file and an import job.

        Creating the job in ``analyze-duplicates`` queues duplicate analysis.

        Args:
            dataset: Dataset document; created when it has no stored id
            file_path: Path of the parsed import file
            sheet_index: Sheet to import for workbook files
            filename: Display name of the import file

        Returns:
            The stored import job document
        """
        stored_dataset = None
        if dataset.get("id") is not None:
            stored_dataset = await self.persistence.find_by_id(DATASETS, dataset["id"])
        if stored_dataset is None:
            stored_dataset = await self.persistence.create(DATASETS, dataset)

        import_file = await self.persistence.create(IMPORT_FILES, {
            "filename": filename or file_path,
            "filePath": file_path,
            "status": ImportFileStatus.PROCESSING.value,
        })

        job = await self.persistence.create(IMPORT_JOBS, {
            "dataset": stored_dataset["id"],
            "importFile": import_file["id"],
            "stage": ProcessingStage.ANALYZE_DUPLICATES.value,
            "sheetIndex": sheet_index,
            "progress": {"current": 0, "total": 0},
            "errors": [],
        })
        self.logger.info("Import job created", extra={
            "import_job_id": job["id"],
            "dataset_id": stored_dataset["id"],
            "file_path": file_path
        })
        return await self.persistence.find_by_id(IMPORT_JOBS, job["id"])

    async def approve(self, import_job_id: Any) -> Dict[str, Any]:
        """Release a job waiting in ``await-approval``."""
        job = await self.persistence.find_by_id(IMPORT_JOBS, import_job_id)
        if job is None:
            raise ImportJobNotFoundError(import_job_id)
        if job.get("stage") != ProcessingStage.AWAIT_APPROVAL.value:
            raise InvalidStageTransitionError(job.get("stage"), ProcessingStage.CREATE_SCHEMA_VERSION.value)
        return await self.persistence.update(IMPORT_JOBS, import_job_id, {
            "stage": ProcessingStage.CREATE_SCHEMA_VERSION.value,
        })

    async def get_import_job(self, import_job_id: Any) -> Optional[Dict[str, Any]]:
        return await self.persistence.find_by_id(IMPORT_JOBS, import_job_id)

    # Task execution

    async def run_job(self, queued: QueuedJob) -> Dict[str, Any]:
        """
        Execute one queued task.

        Handler exceptions are logged and recorded, never raised; the
        handlers themselves move the import job to ``failed``.

        Returns:
            Structured result with ``task``, ``success`` and ``result`` or ``error``
        """
        if queued.task == JobTask.CLEANUP_STAGE_TRANSITION_LOCKS.value:
            result = await self.transitions.cleanup_task()
            return {"task": queued.task, "success": True, "result": result}

        handler = self._handlers.get(queued.task)
        if handler is None:
            self.logger.warning("No handler registered for task", extra={"task": queued.task})
            return {"task": queued.task, "success": False, "error": f"No handler for task: {queued.task}"}

        started = time.monotonic()
        with LoggerContext(self.logger, task=queued.task, queued_job_id=queued.id):
            return await self._run_handler(handler, queued, started)

    async def _run_handler(self, handler: BaseJobHandler, queued: QueuedJob, started: float) -> Dict[str, Any]:
        try:
            result = await handler.handle(queued.input)
            self.logger.debug("Task completed", extra={
                "duration_ms": round((time.monotonic() - started) * 1000, 2)
            })
            return {"task": queued.task, "success": True, "result": result}
        except Exception as e:
            error_registry.record_error(e)
            self.logger.error("Task failed", extra={
                "input": queued.input,
                "error": str(e)
            }, exc_info=True)
            return {"task": queued.task, "success": False, "error": str(e)}

    async def run_next(self) -> Optional[Dict[str, Any]]:
        """Run the oldest queued task; None when the queue is empty or paused."""
        queued = await self.job_queue.dequeue()
        if queued is None:
            return None
        return await self.run_job(queued)

    async def drain(self, max_jobs: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Run queued tasks until the queue is empty.

        Args:
            max_jobs: Upper bound on tasks to run

        Returns:
            Results of every task run, in order
        """
        results: List[Dict[str, Any]] = []
        while max_jobs is None or len(results) < max_jobs:
            result = await self.run_next()
            if result is None:
                break
            results.append(result)
        return results

    async def import_file(self, dataset: Dict[str, Any], file_path: str,
                          sheet_index: int = 0, max_jobs: Optional[int] = None) -> Dict[str, Any]:
        """Create an import job for ``file_path`` and run it until the queue drains."""
        job = await self.create_import(dataset, file_path, sheet_index)
        await self.drain(max_jobs)
        return await self.persistence.find_by_id(IMPORT_JOBS, job["id"])

    # Maintenance

    async def run_maintenance(self) -> Dict[str, int]:
        """Prune stale transition locks and expired cache entries."""
        locks_cleaned = self.transitions.cleanup_old_locks()
        cache_removed = await self.cache_manager.cleanup_all()
        if self.url_fetch_cache is not None:
            cache_removed += await self.url_fetch_cache.cleanup()
        if locks_cleaned or cache_removed:
            self.logger.info("Maintenance completed", extra={
                "locks_cleaned": locks_cleaned,
                "cache_entries_removed": cache_removed
            })
        return {"locks_cleaned": locks_cleaned, "cache_entries_removed": cache_removed}

    async def _maintenance_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except Exception:
                self.logger.error("Maintenance run failed", exc_info=True)

    async def get_system_status(self) -> Dict[str, Any]:
        """Snapshot of queue, lock and cache state."""
        return {
            "is_running": self._is_running,
            "queue": await self.job_queue.get_queue_statistics(),
            "transitions_in_progress": self.transitions.get_transitioning_count(),
            "caches": await self.cache_manager.get_all_stats(),
            "errors": error_registry.get_error_statistics(),
        }
