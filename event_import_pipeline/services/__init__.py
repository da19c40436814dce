"""
Services package for Event Import Pipeline

Contains caching, URL fetching, ID generation, type transformation, stage
transition and progress tracking services.
"""

from .cache import Cache, CacheManager, create_storage
from .url_fetch_cache import UrlFetchCache, CachedResponse, normalize_url
from .url_fetch import fetch_with_retry, detect_file_type, calculate_data_hash, FetchOptions, FetchResult
from .fault_tolerance import RetryPolicy, execute_with_retry
from .id_generation import IdGenerationService, IdGenerationResult, generate_unique_id, generate_content_hash
from .type_transformation import TypeTransformationService
from .stage_transition import StageTransitionService, StageTransitionResult
from .progress_tracking import ProgressTrackingService

__all__ = [
    "Cache",
    "CacheManager",
    "create_storage",
    "UrlFetchCache",
    "CachedResponse",
    "normalize_url",
    "fetch_with_retry",
    "detect_file_type",
    "calculate_data_hash",
    "FetchOptions",
    "FetchResult",
    "RetryPolicy",
    "execute_with_retry",
    "IdGenerationService",
    "IdGenerationResult",
    "generate_unique_id",
    "generate_content_hash",
    "TypeTransformationService",
    "StageTransitionService",
    "StageTransitionResult",
    "ProgressTrackingService"
]
