"""
Utilities package for Event Import Pipeline

Contains logging helpers, dot-path field access and the in-process
persistence, job queue and file reading collaborators.
"""

from .logger import (
    setup_logger,
    get_logger,
    set_log_context,
    clear_log_context,
    create_job_logger,
    log_performance,
    LoggerContext,
)
from .field_paths import get_value_at_path, set_value_at_path
from .persistence import (
    PersistenceBackend,
    InMemoryPersistence,
    IMPORT_JOBS,
    IMPORT_FILES,
    DATASETS,
    EVENTS,
)
from .job_queue import JobQueue, InMemoryJobQueue, QueuedJob
from .file_readers import read_batch_from_file, count_rows

__all__ = [
    "setup_logger",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "create_job_logger",
    "log_performance",
    "LoggerContext",
    "get_value_at_path",
    "set_value_at_path",
    "PersistenceBackend",
    "InMemoryPersistence",
    "IMPORT_JOBS",
    "IMPORT_FILES",
    "DATASETS",
    "EVENTS",
    "JobQueue",
    "InMemoryJobQueue",
    "QueuedJob",
    "read_batch_from_file",
    "count_rows",
]
