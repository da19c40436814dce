"""
Import job data models for Event Import Pipeline

Defines processing stages, the stage graph, queued task types and the
ImportJob record that moves through them.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


class ProcessingStage(Enum):
    """Import processing stage enumeration."""
    ANALYZE_DUPLICATES = "analyze-duplicates"
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    AWAIT_APPROVAL = "await-approval"
    CREATE_SCHEMA_VERSION = "create-schema-version"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    COMPLETED = "completed"
    FAILED = "failed"


class JobTask(Enum):
    """Task slugs accepted by the job queue."""
    ANALYZE_DUPLICATES = "analyze-duplicates"
    DETECT_SCHEMA = "detect-schema"
    VALIDATE_SCHEMA = "validate-schema"
    CREATE_SCHEMA_VERSION = "create-schema-version"
    GEOCODE_BATCH = "geocode-batch"
    CREATE_EVENTS = "create-events"
    CLEANUP_STAGE_TRANSITION_LOCKS = "cleanup-stage-transition-locks"


class ImportFileStatus(Enum):
    """Roll-up status of an uploaded or fetched import file."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Directed edges; self-loops and "-> failed" are handled in can_transition_to
VALID_STAGE_TRANSITIONS: Dict[ProcessingStage, List[ProcessingStage]] = {
    ProcessingStage.ANALYZE_DUPLICATES: [ProcessingStage.DETECT_SCHEMA],
    ProcessingStage.DETECT_SCHEMA: [ProcessingStage.VALIDATE_SCHEMA],
    ProcessingStage.VALIDATE_SCHEMA: [ProcessingStage.AWAIT_APPROVAL, ProcessingStage.GEOCODE_BATCH],
    ProcessingStage.AWAIT_APPROVAL: [ProcessingStage.CREATE_SCHEMA_VERSION],
    ProcessingStage.CREATE_SCHEMA_VERSION: [ProcessingStage.GEOCODE_BATCH],
    ProcessingStage.GEOCODE_BATCH: [ProcessingStage.CREATE_EVENTS],
    ProcessingStage.CREATE_EVENTS: [ProcessingStage.COMPLETED],
    ProcessingStage.COMPLETED: [],
    ProcessingStage.FAILED: [],
}

TERMINAL_STAGES = frozenset({ProcessingStage.COMPLETED, ProcessingStage.FAILED})


def parse_stage(value: Any) -> Optional[ProcessingStage]:
    """Convert a stage slug or enum to ProcessingStage, None if unknown."""
    if isinstance(value, ProcessingStage):
        return value
    try:
        return ProcessingStage(value)
    except ValueError:
        return None


def can_transition_to(from_stage: Any, to_stage: Any) -> bool:
    """
    Check whether moving from ``from_stage`` to ``to_stage`` is allowed.

    Staying in the same stage and moving to FAILED are always valid for
    known stages. Unknown stage names are never valid.
    """
    source = parse_stage(from_stage)
    target = parse_stage(to_stage)
    if source is None or target is None:
        return False
    if source == target or target == ProcessingStage.FAILED:
        return True
    return target in VALID_STAGE_TRANSITIONS[source]


def get_valid_transitions(from_stage: Any) -> List[ProcessingStage]:
    """List every stage reachable in one step, including self and FAILED."""
    source = parse_stage(from_stage)
    if source is None:
        return []
    targets = [source] + list(VALID_STAGE_TRANSITIONS[source])
    if ProcessingStage.FAILED not in targets:
        targets.append(ProcessingStage.FAILED)
    return targets


@dataclass
class DuplicateRow:
    """A row flagged as duplicate by the analyze-duplicates stage."""
    row_number: int
    unique_id: str
    first_occurrence: Optional[int] = None
    existing_event_id: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"rowNumber": self.row_number, "uniqueId": self.unique_id}
        if self.first_occurrence is not None:
            data["firstOccurrence"] = self.first_occurrence
        if self.existing_event_id is not None:
            data["existingEventId"] = self.existing_event_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DuplicateRow':
        return cls(
            row_number=int(data["rowNumber"]),
            unique_id=str(data.get("uniqueId", "")),
            first_occurrence=data.get("firstOccurrence"),
            existing_event_id=data.get("existingEventId"),
        )


@dataclass
class DuplicatesInfo:
    """Internal/external duplicate lists plus their summary."""
    internal: List[DuplicateRow] = field(default_factory=list)
    external: List[DuplicateRow] = field(default_factory=list)
    total_rows: int = 0

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "totalRows": self.total_rows,
            "uniqueRows": max(self.total_rows - len(self.internal) - len(self.external), 0),
            "internalDuplicates": len(self.internal),
            "externalDuplicates": len(self.external),
        }

    def skipped_row_numbers(self) -> set:
        return {row.row_number for row in self.internal} | {row.row_number for row in self.external}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "internal": [row.to_dict() for row in self.internal],
            "external": [row.to_dict() for row in self.external],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DuplicatesInfo':
        data = data or {}
        summary = data.get("summary") or {}
        return cls(
            internal=[DuplicateRow.from_dict(row) for row in data.get("internal") or []],
            external=[DuplicateRow.from_dict(row) for row in data.get("external") or []],
            total_rows=int(summary.get("totalRows", 0) or 0),
        )


@dataclass
class ImportJob:
    """One unit of pipeline work for a single import file."""

    id: Any
    dataset: Any
    import_file: Any
    stage: ProcessingStage = ProcessingStage.ANALYZE_DUPLICATES
    sheet_index: int = 0

    duplicates: Dict[str, Any] = field(default_factory=dict)
    progress: Dict[str, Any] = field(default_factory=dict)
    results: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    geocoding_results: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def can_transition_to(self, new_stage: ProcessingStage) -> bool:
        return can_transition_to(self.stage, new_stage)

    def get_valid_transitions(self) -> List[ProcessingStage]:
        return get_valid_transitions(self.stage)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the document shape stored by the persistence layer."""
        return {
            "id": self.id,
            "dataset": self.dataset,
            "importFile": self.import_file,
            "stage": self.stage.value,
            "sheetIndex": self.sheet_index,
            "duplicates": self.duplicates,
            "progress": self.progress,
            "results": self.results,
            "errors": self.errors,
            "geocodingResults": self.geocoding_results,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImportJob':
        stage = parse_stage(data.get("stage")) or ProcessingStage.ANALYZE_DUPLICATES
        job = cls(
            id=data.get("id"),
            dataset=data.get("dataset"),
            import_file=data.get("importFile"),
            stage=stage,
            sheet_index=int(data.get("sheetIndex") or 0),
            duplicates=data.get("duplicates") or {},
            progress=data.get("progress") or {},
            results=data.get("results"),
            errors=list(data.get("errors") or []),
            geocoding_results=data.get("geocodingResults") or {},
        )
        for attr, key in (("created_at", "createdAt"), ("updated_at", "updatedAt")):
            value = data.get(key)
            if isinstance(value, str):
                setattr(job, attr, datetime.fromisoformat(value))
            elif isinstance(value, datetime):
                setattr(job, attr, value)
        return job
