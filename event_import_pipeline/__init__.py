"""
Event Import Pipeline

An asynchronous bulk-import pipeline that ingests tabular files (fetched from
a URL or uploaded), deduplicates rows, assigns stable identifiers, applies
optional type transformations and materializes normalized event records.

Import jobs move through a stage machine:
analyze-duplicates -> detect-schema -> validate-schema -> (await-approval ->
create-schema-version) -> geocode-batch -> create-events -> completed/failed.
Every stage change queues the task for the next stage; stage transitions
are guarded against concurrent duplicates.

Usage:
    from event_import_pipeline import ImportPipeline

    pipeline = ImportPipeline()
    await pipeline.start()

    job = await pipeline.import_file(
        {"name": "Incidents", "idStrategy": {"type": "external", "externalIdPath": "id"}},
        "/path/to/incidents.csv",
    )
    print(job["stage"], job["results"])

    await pipeline.stop()
"""

__version__ = "1.0.0"
__author__ = "Event Import Pipeline Team"
__license__ = "MIT"

# Exceptions and configuration
from .core.exceptions import (
    ImportPipelineError,
    ImportJobNotFoundError,
    DatasetNotFoundError,
    ImportFileNotFoundError,
    IdGenerationError,
    TransformationError,
    InvalidStageTransitionError,
    TransitionInProgressError,
    ConfigurationError,
    FetchError
)
from .core.config import PipelineConfig, load_config

# Data models
from .models.import_job import ProcessingStage, JobTask, ImportJob, DuplicatesInfo
from .models.dataset import Dataset, IdStrategy, IdStrategyType, TransformationRule
from .models.event import Event, ValidationStatus

# Services (for advanced usage)
from .services.cache import Cache, CacheManager
from .services.url_fetch_cache import UrlFetchCache
from .services.id_generation import IdGenerationService
from .services.type_transformation import TypeTransformationService
from .services.stage_transition import StageTransitionService
from .services.progress_tracking import ProgressTrackingService

# Utilities
from .utils.logger import setup_logger, get_logger

# Core pipeline
from .core.pipeline import ImportPipeline

__all__ = [
    # Core
    "ImportPipeline",
    "PipelineConfig",
    "load_config",

    # Models
    "ProcessingStage",
    "JobTask",
    "ImportJob",
    "DuplicatesInfo",
    "Dataset",
    "IdStrategy",
    "IdStrategyType",
    "TransformationRule",
    "Event",
    "ValidationStatus",

    # Services (for advanced usage)
    "Cache",
    "CacheManager",
    "UrlFetchCache",
    "IdGenerationService",
    "TypeTransformationService",
    "StageTransitionService",
    "ProgressTrackingService",

    # Utilities
    "setup_logger",
    "get_logger",

    # Exceptions
    "ImportPipelineError",
    "ImportJobNotFoundError",
    "DatasetNotFoundError",
    "ImportFileNotFoundError",
    "IdGenerationError",
    "TransformationError",
    "InvalidStageTransitionError",
    "TransitionInProgressError",
    "ConfigurationError",
    "FetchError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
