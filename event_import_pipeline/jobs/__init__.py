"""
Task handlers for Event Import Pipeline
"""

from .base import BaseJobHandler, JobHandlerContext
from .analyze_duplicates import AnalyzeDuplicatesJob
from .create_events_batch import CreateEventsBatchJob
from .stage_advance import StageAdvanceHandler, ValidateSchemaHandler, create_stage_advance_handlers

__all__ = [
    "BaseJobHandler",
    "JobHandlerContext",
    "AnalyzeDuplicatesJob",
    "CreateEventsBatchJob",
    "StageAdvanceHandler",
    "ValidateSchemaHandler",
    "create_stage_advance_handlers"
]
