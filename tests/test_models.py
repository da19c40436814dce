"""Tests for import job and dataset models and the error registry."""

import pytest

from event_import_pipeline.core.exceptions import (
    ErrorRegistry,
    InvalidStageTransitionError,
    TransitionInProgressError,
)
from event_import_pipeline.models.dataset import Dataset, IdStrategy
from event_import_pipeline.models.import_job import DuplicatesInfo, ImportJob, ProcessingStage


def test_import_job_document_round_trip():
    job = ImportJob.from_dict({
        "id": 3,
        "dataset": 1,
        "importFile": 2,
        "stage": "geocode-batch",
        "sheetIndex": "1",
        "errors": [{"row": 4, "error": "bad"}],
        "createdAt": "2024-05-01T10:00:00",
    })

    assert job.stage is ProcessingStage.GEOCODE_BATCH
    assert job.sheet_index == 1
    assert job.can_transition_to(ProcessingStage.CREATE_EVENTS)
    assert not job.can_transition_to(ProcessingStage.COMPLETED)
    assert not job.is_terminal

    data = job.to_dict()
    assert data["stage"] == "geocode-batch"
    assert data["importFile"] == 2
    assert data["createdAt"] == "2024-05-01T10:00:00"
    assert data["errors"] == [{"row": 4, "error": "bad"}]


def test_unknown_stage_falls_back_to_first_stage():
    job = ImportJob.from_dict({"id": 1, "stage": "uploading"})

    assert job.stage is ProcessingStage.ANALYZE_DUPLICATES
    assert ImportJob(id=2, dataset=1, import_file=1, stage=ProcessingStage.FAILED).is_terminal


def test_duplicates_info_summary_and_skipped_rows():
    info = DuplicatesInfo.from_dict({
        "internal": [{"rowNumber": 2, "uniqueId": "1:ext:A", "firstOccurrence": 0}],
        "external": [{"rowNumber": 5, "uniqueId": "1:ext:C", "existingEventId": 9}],
        "summary": {"totalRows": 6},
    })

    assert info.skipped_row_numbers() == {2, 5}
    assert info.summary == {"totalRows": 6, "uniqueRows": 4, "internalDuplicates": 1, "externalDuplicates": 1}
    assert info.to_dict()["external"] == [{"rowNumber": 5, "uniqueId": "1:ext:C", "existingEventId": 9}]


def test_dataset_from_document():
    dataset = Dataset.from_dict({
        "id": 7,
        "name": "Incidents",
        "idStrategy": {"type": "computed", "computedIdFields": ["title", {"fieldPath": "when.date"}, {}]},
        "schemaConfig": {"allowTransformations": True, "locked": True},
        "typeTransformations": [
            {"fieldPath": "a", "fromType": "string", "toType": "number"},
            {"fieldPath": "b", "fromType": "string", "toType": "number", "enabled": False},
        ],
        "deduplicationConfig": {"enabled": False},
        "fieldMappingOverrides": {"latitudePath": "lat", "longitudePath": "lon"},
    })

    assert [f.field_path for f in dataset.id_strategy.computed_id_fields] == ["title", "when.date"]
    assert dataset.allow_transformations and dataset.require_approval
    assert not dataset.deduplication_enabled
    assert [rule.field_path for rule in dataset.enabled_transformations] == ["a"]
    assert dataset.field_mappings.latitude_path == "lat"
    assert dataset.to_dict()["schemaConfig"] == {"allowTransformations": True, "locked": True}


def test_id_strategy_coerce_rejects_other_types():
    assert IdStrategy.coerce(None) is None
    with pytest.raises(TypeError):
        IdStrategy.coerce("external")


def test_stage_errors_serialise():
    error = InvalidStageTransitionError("analyze-duplicates", "create-events")

    data = error.to_dict()
    assert data["error"] == "InvalidStageTransitionError"
    assert data["error_code"] == "INVALID_STAGE_TRANSITION"
    assert data["message"] == "Invalid stage transition from 'analyze-duplicates' to 'create-events'"


def test_error_registry_counts_by_class():
    registry = ErrorRegistry()
    assert registry.get_error_statistics()["most_common_error"] is None

    registry.record_error(ValueError("x"))
    registry.record_error(ValueError("y"))
    registry.record_error(TransitionInProgressError(1, "detect-schema", "validate-schema"))

    stats = registry.get_error_statistics()
    assert stats["total_errors"] == 3
    assert stats["most_common_error"] == "ValueError"
    assert stats["error_counts"]["TransitionInProgressError"] == 1

    registry.reset()
    assert registry.get_error_statistics()["total_errors"] == 0
