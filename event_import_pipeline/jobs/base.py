"""
Base job handler interface.

Defines the context shared by task handlers and the interface every
handler implements.
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.config import PipelineConfig
from ..core.exceptions import DatasetNotFoundError, ImportFileNotFoundError, ImportJobNotFoundError
from ..models.dataset import Dataset
from ..services.id_generation import IdGenerationService
from ..services.progress_tracking import ProgressTrackingService
from ..services.type_transformation import CustomTransform
from ..utils.file_readers import count_rows, read_batch_from_file
from ..utils.job_queue import JobQueue
from ..utils.persistence import DATASETS, IMPORT_FILES, IMPORT_JOBS, PersistenceBackend

BatchReader = Callable[[str, int, int, int], Awaitable[List[Dict[str, Any]]]]
RowCounter = Callable[[str, int], Awaitable[int]]


@dataclass
class JobHandlerContext:
    """Collaborators and settings available to every handler."""
    persistence: PersistenceBackend
    job_queue: JobQueue
    config: PipelineConfig = field(default_factory=PipelineConfig)
    id_service: IdGenerationService = field(default_factory=IdGenerationService)
    progress: Optional[ProgressTrackingService] = None
    read_batch: BatchReader = read_batch_from_file
    count_rows: RowCounter = count_rows
    custom_transforms: Dict[str, CustomTransform] = field(default_factory=dict)
    clock: Callable[[], float] = time.time

    def __post_init__(self):
        if self.progress is None:
            self.progress = ProgressTrackingService(self.persistence, self.config.batch, clock=self.clock)

    def file_path_for(self, import_file: Dict[str, Any]) -> str:
        """Location of an import file's parsed contents."""
        if import_file.get("filePath"):
            return import_file["filePath"]
        return os.path.join(self.config.upload_dir, import_file.get("filename") or "")


class BaseJobHandler(ABC):
    """
    Abstract base class for queue task handlers.

    A handler processes one ``{task, input}`` job and returns a result dict.
    """

    task: str = ""

    def __init__(self, context: JobHandlerContext):
        """
        Initialize the handler.

        Args:
            context: Shared collaborators and configuration
        """
        self.context = context

    @abstractmethod
    async def handle(self, input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one queued job.

        Args:
            input: Task input (always carries ``importJobId``)

        Returns:
            Handler-specific result
        """
        pass

    async def load_resources(self, import_job_id: Any) -> Tuple[Dict[str, Any], Dataset, Dict[str, Any]]:
        """
        Load the import job with its dataset and import file.

        Raises:
            ImportJobNotFoundError, DatasetNotFoundError, ImportFileNotFoundError
        """
        persistence = self.context.persistence
        job = await persistence.find_by_id(IMPORT_JOBS, import_job_id)
        if job is None:
            raise ImportJobNotFoundError(import_job_id)

        dataset_doc = job.get("dataset")
        if not isinstance(dataset_doc, dict) or "idStrategy" not in dataset_doc:
            dataset_doc = await persistence.find_by_id(DATASETS, dataset_doc)
        if dataset_doc is None:
            raise DatasetNotFoundError(job.get("dataset"))

        import_file = job.get("importFile")
        if not isinstance(import_file, dict) or "filename" not in import_file:
            import_file = await persistence.find_by_id(IMPORT_FILES, import_file)
        if import_file is None:
            raise ImportFileNotFoundError(job.get("importFile"))

        return job, Dataset.from_dict(dataset_doc), import_file

    async def mark_job_failed(self, import_job_id: Any, error: Exception):
        """Move the job to ``failed`` and append the error to its log."""
        persistence = self.context.persistence
        job = await persistence.find_by_id(IMPORT_JOBS, import_job_id)
        if job is None:
            return
        errors = list(job.get("errors") or [])
        errors.append({"row": None, "error": str(error)})
        await persistence.update(IMPORT_JOBS, import_job_id, {"stage": "failed", "errors": errors})

    @property
    def handler_name(self) -> str:
        return self.__class__.__name__
