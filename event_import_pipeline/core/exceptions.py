"""
Exception classes for Event Import Pipeline

Provides the hierarchy of errors raised by the cache layer, the URL fetcher,
identifier generation, type transformation and the stage state machine.
"""

from typing import Optional, Dict, Any, List


class ImportPipelineError(Exception):
    """Base exception for all import pipeline errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class RetryableError(ImportPipelineError):
    """Marker base for failures an upstream retry policy may retry."""


class NonRetryableError(ImportPipelineError):
    """Marker base for failures that must never be retried automatically."""


class ImportJobNotFoundError(NonRetryableError):
    """Raised when an import job referenced by a task cannot be loaded."""

    def __init__(self, import_job_id: Any):
        super().__init__(
            f"Import job not found: {import_job_id}",
            error_code="IMPORT_JOB_NOT_FOUND",
            details={"import_job_id": import_job_id}
        )


class DatasetNotFoundError(NonRetryableError):
    """Raised when the dataset of an import job is missing."""

    def __init__(self, dataset_id: Any = None):
        super().__init__(
            "Dataset not found",
            error_code="DATASET_NOT_FOUND",
            details={"dataset_id": dataset_id}
        )


class ImportFileNotFoundError(NonRetryableError):
    """Raised when the import file of an import job is missing."""

    def __init__(self, import_file_id: Any = None):
        super().__init__(
            "Import file not found",
            error_code="IMPORT_FILE_NOT_FOUND",
            details={"import_file_id": import_file_id}
        )


class IdGenerationError(NonRetryableError):
    """Raised when a unique identifier cannot be derived from a row."""

    def __init__(self, message: str, strategy: Optional[str] = None):
        super().__init__(
            message,
            error_code="ID_GENERATION_ERROR",
            details={"strategy": strategy}
        )


class MissingIdStrategyError(IdGenerationError):
    """Raised when a dataset has no idStrategy configured."""

    def __init__(self):
        super().__init__("idStrategy is required")
        self.error_code = "MISSING_ID_STRATEGY"


class TransformationError(NonRetryableError):
    """Raised when a single field transformation fails."""

    def __init__(self, message: str, field_path: Optional[str] = None, strategy: Optional[str] = None):
        super().__init__(
            message,
            error_code="TRANSFORMATION_ERROR",
            details={"field_path": field_path, "strategy": strategy}
        )


class InvalidStageTransitionError(NonRetryableError):
    """Raised when a stage change does not follow the stage graph."""

    def __init__(self, from_stage: Optional[str], to_stage: str):
        super().__init__(
            f"Invalid stage transition from '{from_stage}' to '{to_stage}'",
            error_code="INVALID_STAGE_TRANSITION",
            details={"from_stage": from_stage, "to_stage": to_stage}
        )


class TransitionInProgressError(ImportPipelineError):
    """Raised when the identical transition is already being processed."""

    def __init__(self, job_id: Any, from_stage: Optional[str], to_stage: str):
        super().__init__(
            "Transition already in progress",
            error_code="TRANSITION_IN_PROGRESS",
            details={"job_id": job_id, "from_stage": from_stage, "to_stage": to_stage}
        )


class QueueError(ImportPipelineError):
    """Raised when queue operations fail."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Queue operation '{operation}' failed: {message}",
            error_code="QUEUE_ERROR",
            details={"operation": operation}
        )


class PersistenceError(ImportPipelineError):
    """Raised when the persistence collaborator rejects an operation."""

    def __init__(self, operation: str, message: str, collection: Optional[str] = None):
        super().__init__(
            f"Persistence operation '{operation}' failed: {message}",
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, "collection": collection}
        )


class CacheError(ImportPipelineError):
    """Raised by cache storage backends; the Cache facade logs and absorbs it."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Cache operation '{operation}' failed: {message}",
            error_code="CACHE_ERROR",
            details={"operation": operation}
        )


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class FetchError(RetryableError):
    """
    Raised when an outbound fetch fails.

    ``retryable`` tells the retry loop whether another attempt makes sense;
    the status code (or underlying error class) is kept in the message.
    """

    def __init__(self, message: str, url: Optional[str] = None,
                 status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(
            message,
            error_code="FETCH_ERROR",
            details={"url": url, "status_code": status_code}
        )
        self.url = url
        self.status_code = status_code
        self.retryable = retryable


class FetchTimeoutError(FetchError):
    """Raised when an outbound fetch exceeds its timeout."""

    def __init__(self, timeout_ms: int, url: Optional[str] = None):
        super().__init__(f"Request timeout after {timeout_ms}ms", url=url)
        self.error_code = "FETCH_TIMEOUT"
        self.details["timeout_ms"] = timeout_ms


class FileTooLargeError(FetchError):
    """Raised when a fetched file exceeds the configured maximum size."""

    def __init__(self, size: int, max_size: int, url: Optional[str] = None):
        super().__init__(
            f"File too large: {size} bytes exceeds maximum of {max_size} bytes",
            url=url,
            retryable=False
        )
        self.error_code = "FILE_TOO_LARGE"
        self.details.update({"size": size, "max_size": max_size})


class UnsupportedMimeTypeError(FetchError):
    """Raised when a fetched file's content type is not allowed."""

    def __init__(self, mime_type: str, allowed: List[str], url: Optional[str] = None):
        super().__init__(
            f"Unsupported mime type: {mime_type} (allowed: {', '.join(allowed)})",
            url=url,
            retryable=False
        )
        self.error_code = "UNSUPPORTED_MIME_TYPE"
        self.details.update({"mime_type": mime_type, "allowed": allowed})


class UnsupportedFileTypeError(NonRetryableError):
    """Raised when the file reader cannot parse a file format."""

    def __init__(self, file_path: str):
        super().__init__(
            f"Unsupported file type: {file_path}",
            error_code="UNSUPPORTED_FILE_TYPE",
            details={"file_path": file_path}
        )


class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: Exception):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        self.error_counts.clear()


# Global error registry instance
error_registry = ErrorRegistry()
