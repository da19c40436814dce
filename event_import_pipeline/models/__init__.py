"""
Data models package for Event Import Pipeline

Contains the import job, dataset, event and cache data structures.
"""

from .import_job import (
    ProcessingStage,
    JobTask,
    ImportFileStatus,
    VALID_STAGE_TRANSITIONS,
    TERMINAL_STAGES,
    can_transition_to,
    get_valid_transitions,
    parse_stage,
    DuplicateRow,
    DuplicatesInfo,
    ImportJob,
)
from .dataset import (
    IdStrategyType,
    TransformStrategy,
    FieldType,
    ComputedIdField,
    IdStrategy,
    TransformationRule,
    FieldMappings,
    Dataset,
)
from .event import (
    ValidationStatus,
    CoordinateSource,
    Coordinates,
    GeocodingResult,
    FieldChange,
    Event,
)
from .cache import CacheEntry, CacheSetOptions, CacheStats

__all__ = [
    # Import jobs
    "ProcessingStage",
    "JobTask",
    "ImportFileStatus",
    "VALID_STAGE_TRANSITIONS",
    "TERMINAL_STAGES",
    "can_transition_to",
    "get_valid_transitions",
    "parse_stage",
    "DuplicateRow",
    "DuplicatesInfo",
    "ImportJob",

    # Datasets
    "IdStrategyType",
    "TransformStrategy",
    "FieldType",
    "ComputedIdField",
    "IdStrategy",
    "TransformationRule",
    "FieldMappings",
    "Dataset",

    # Events
    "ValidationStatus",
    "CoordinateSource",
    "Coordinates",
    "GeocodingResult",
    "FieldChange",
    "Event",

    # Cache
    "CacheEntry",
    "CacheSetOptions",
    "CacheStats",
]
