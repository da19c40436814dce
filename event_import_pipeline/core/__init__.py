"""
Core package for Event Import Pipeline

Contains exceptions and configuration. The pipeline driver lives in
``core.pipeline`` and is imported from the package root.
"""

from .exceptions import (
    ImportPipelineError,
    RetryableError,
    NonRetryableError,
    ImportJobNotFoundError,
    DatasetNotFoundError,
    ImportFileNotFoundError,
    IdGenerationError,
    MissingIdStrategyError,
    TransformationError,
    InvalidStageTransitionError,
    TransitionInProgressError,
    QueueError,
    PersistenceError,
    CacheError,
    ConfigurationError,
    FetchError,
    FetchTimeoutError,
    FileTooLargeError,
    UnsupportedMimeTypeError,
    UnsupportedFileTypeError,
    ErrorRegistry,
    error_registry
)
from .config import (
    CacheConfig,
    UrlFetchCacheConfig,
    FetchConfig,
    BatchConfig,
    PipelineConfig,
    load_config
)

__all__ = [
    "ImportPipelineError",
    "RetryableError",
    "NonRetryableError",
    "ImportJobNotFoundError",
    "DatasetNotFoundError",
    "ImportFileNotFoundError",
    "IdGenerationError",
    "MissingIdStrategyError",
    "TransformationError",
    "InvalidStageTransitionError",
    "TransitionInProgressError",
    "QueueError",
    "PersistenceError",
    "CacheError",
    "ConfigurationError",
    "FetchError",
    "FetchTimeoutError",
    "FileTooLargeError",
    "UnsupportedMimeTypeError",
    "UnsupportedFileTypeError",
    "ErrorRegistry",
    "error_registry",
    "CacheConfig",
    "UrlFetchCacheConfig",
    "FetchConfig",
    "BatchConfig",
    "PipelineConfig",
    "load_config"
]
